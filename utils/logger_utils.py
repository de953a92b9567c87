"""
Logging utilities
"""
import logging
import os

import config


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger instance"""
    logger = logging.getLogger(name)

    if not logger.handlers:
        log_level = getattr(config, 'LOG_LEVEL', 'INFO')
        logger.setLevel(getattr(logging, log_level, logging.INFO))

        # Console output
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_format = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_format)
        logger.addHandler(console_handler)

        # File output
        if getattr(config, 'LOG_TO_FILE', False):
            log_dir = getattr(config, 'LOG_DIR', 'logs')
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(
                os.path.join(log_dir, getattr(config, 'LOG_FILE', 'backtest.log')),
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_format = logging.Formatter(
                '%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_format)
            logger.addHandler(file_handler)

    return logger
