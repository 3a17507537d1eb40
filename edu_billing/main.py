"""ASGI entrypoint for the billing service."""

import os

import uvicorn

from .core.app_factory import create_application

app = create_application()


def run() -> None:
    """Serve ``app`` with uvicorn; HOST and PORT come from the environment."""
    uvicorn.run(
        "edu_billing.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
