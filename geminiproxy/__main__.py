import uvicorn
from dotenv import load_dotenv

# settings are read at import time, so the .env file has to be loaded first
load_dotenv()

from . import config  # noqa: E402

if __name__ == "__main__":
    uvicorn.run("geminiproxy.main:app", host=config.HOST, port=config.PORT)
