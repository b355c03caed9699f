import logging

import settings
from cli import main as run_cli


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_cli()


if __name__ == "__main__":
    main()
