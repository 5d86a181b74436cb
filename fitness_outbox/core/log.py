import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO"):
    """Applies the service-wide log format. Safe to call more than once."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("fitness_outbox").setLevel(level.upper())
