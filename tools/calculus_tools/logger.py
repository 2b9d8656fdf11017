"""
Logging helpers shared by the analysis scripts and the calculus_tools functions.
"""

import logging

LOGGER_NAME = 'calculus_tools'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(log_file=None, log_level=logging.INFO):
    """
    Set up the package logger.
    
    Parameters:
    -----------
    log_file : str or Path, optional
        Path to a log file; if None, log to the console only
    log_level : int or str
        Logging level, e.g. logging.INFO or 'DEBUG'
        
    Returns:
    --------
    logging.Logger
        Configured logger
    """
    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Re-running a script in the same session must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_print(message, level="info"):
    """Log a message on the package logger at the given level."""
    logger = logging.getLogger(LOGGER_NAME)
    getattr(logger, level)(message)
