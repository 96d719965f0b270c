from unittest import mock

import pytest
from fastapi.testclient import TestClient

from geminiproxy.main import app


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def downstream():
    """Patch the Gemini HTTP call; tests set its ``return_value``."""
    with mock.patch("geminiproxy.client.requests.post") as post:
        yield post
