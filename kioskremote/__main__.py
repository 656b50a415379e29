"""Entry point: `python -m kioskremote` or the `kioskremote` console script."""

import logging

import uvicorn

from kioskremote.config import load_settings


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[logging.StreamHandler()],
    )

    from kioskremote.server import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
