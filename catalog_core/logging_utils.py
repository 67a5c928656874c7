import logging

_configured = False

def setup_logging(log_level: str = "INFO"):
    """Setup console logging once per process; later calls only change the level."""
    global _configured

    root = logging.getLogger()
    root.setLevel(log_level)
    if _configured:
        return root

    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    # apscheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    _configured = True
    root.info("Logging initialized - Level: %s", log_level)
    return root
