import logging
from typing import Optional


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging for the service; ``level`` falls back to INFO."""
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # Stripe's own request logging repeats what the gateway already logs
    logging.getLogger("stripe").setLevel(logging.WARNING)
