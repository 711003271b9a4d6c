"""Load the blog models into ./blog.sqlite. Run from this directory."""
import asyncio

import structlog

from model_loader import get_settings, initialize
from model_loader.logging import configure_logging


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.logging)

    loader = await initialize(settings.loader)

    log = structlog.get_logger("blog")
    for name, model in loader.models.items():
        log.info("model ready", model=name, relations=sorted(model.relations))


if __name__ == "__main__":
    asyncio.run(main())
