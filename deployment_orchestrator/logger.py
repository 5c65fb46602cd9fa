import logging

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def setup_logging(level="INFO"):
    name = str(level).upper()
    if name not in LEVELS:
        raise ValueError(f"unknown log level: {level}")
    logging.basicConfig(level=getattr(logging, name),
                       format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')

def get_logger(name="controller"):
    return logging.getLogger(f"deployment_orchestrator.{name}")
