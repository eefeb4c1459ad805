"""Logging setup for the ibackup command line tool."""

import datetime
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

LOG_LEVEL = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
    'critical': logging.CRITICAL,
}
MAX_MSG_LEN = 1024
LOG_FILE_SIZE = 100000
OWN_LOGGERS = ('irods', 'ibackup')

FILE_FORMAT = '[%(asctime)s] %(name)s {%(filename)s:%(lineno)d} %(levelname)s - %(message)s'
CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s - %(message)s'


class ColorFormatter(logging.Formatter):
    """Console formatter that shows warnings in yellow and errors in red."""

    RESET = '\x1b[0m'
    COLORS = {
        logging.WARNING: '\x1b[1;33m',
        logging.ERROR: '\x1b[1;31m',
        logging.CRITICAL: '\x1b[1;31m',
    }

    def formatMessage(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno)
        if color is None:
            return super().formatMessage(record)
        message = record.message
        record.message = f'{color}{message}{self.RESET}'
        try:
            return super().formatMessage(record)
        finally:
            record.message = message


def set_log_level(verbose: Union[str, int] = 'info'):
    """Set the level of the root logger.

    At DEBUG level the loggers of third party libraries are disabled, except
    those of python-irodsclient.

    Parameters
    ----------
    verbose : str or int
        Name of the level ('debug', 'info', 'warn', 'error', 'critical') or
        a logging level. Unknown names select INFO.

    """
    level = verbose if isinstance(verbose, int) else LOG_LEVEL.get(verbose, logging.INFO)
    logging.getLogger().setLevel(level)
    if level != logging.DEBUG:
        return
    for name, logger in logging.Logger.manager.loggerDict.items():
        if isinstance(logger, logging.Logger) and not name.startswith(OWN_LOGGERS):
            logger.disabled = True


def _truncate_messages():
    make_record = logging.getLogRecordFactory()

    def factory(*args, **kwargs) -> logging.LogRecord:
        record = make_record(*args, **kwargs)
        if isinstance(record.msg, str):
            record.msg = record.msg[:MAX_MSG_LEN]
        return record

    logging.setLogRecordFactory(factory)


def _mark_new_run(logfile: Path):
    line = '=' * 60
    with logfile.open('a', encoding='utf-8') as handle:
        handle.write(f'\n{line}\n  ibackup run started {datetime.datetime.now().isoformat()}\n'
                     f'{line}\n')


def init_logger(app_name: str, log_dir: Union[str, Path], verbose: Optional[str] = None):
    """Send log records to a rotating file and to standard output.

    Parameters
    ----------
    app_name : str
        Base name of the log file.
    log_dir : str or Path
        Directory of the log file, created when missing.
    verbose : str
        Log level name, see :func:`set_log_level`.

    """
    logdir = Path(log_dir).expanduser()
    logdir.mkdir(parents=True, exist_ok=True)
    logfile = logdir / f'{app_name}.log'

    _truncate_messages()
    logging.captureWarnings(True)

    file_handler = logging.handlers.RotatingFileHandler(
        logfile, mode='a', maxBytes=LOG_FILE_SIZE, backupCount=1, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColorFormatter(CONSOLE_FORMAT))

    root = logging.getLogger()
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    set_log_level(verbose if verbose is not None else 'info')
    _mark_new_run(logfile)
