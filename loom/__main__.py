"""Run the Loom API server: ``python -m loom`` or the ``loom`` script."""

import uvicorn

from loom.config import Settings


def main() -> None:
    settings = Settings.from_env()
    uvicorn.run("loom.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
