"""Run the chat service: ``python -m chat_engine``."""
import uvicorn

from chat_engine.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run("chat_engine.main:app", host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
