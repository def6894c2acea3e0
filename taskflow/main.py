"""Entry point for running the task-flow engine with uvicorn."""

import uvicorn

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


def main():
    uvicorn.run("taskflow.main:app", **config.get_uvicorn_config())


if __name__ == "__main__":
    main()
