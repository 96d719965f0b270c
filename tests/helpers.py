from unittest import mock

AUTH = {"Authorization": "Bearer test-key"}


def fake_response(status_code=200, text="", chunks=()):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.iter_content.return_value = iter(chunks)
    return response
