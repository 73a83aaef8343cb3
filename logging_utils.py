import logging
import os
import sys


def configure_logging(
    run_log_path: str = None, logger_name: str = None, level: int = logging.INFO
):
    """
    Configure root logging to stream to stdout and, when run_log_path is set,
    to a per-run log file as well.
    Returns a logger (named if provided, else root) and the formatter so
    callers can attach extra handlers with the same layout.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Scheduled reruns in the same interpreter must not stack handlers
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    # stdout so the external scheduler captures the run output
    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if run_log_path:
        log_dir = os.path.dirname(run_log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(run_log_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if logger_name:
        return logging.getLogger(logger_name), formatter
    return root_logger, formatter
