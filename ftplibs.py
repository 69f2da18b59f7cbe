# -*- coding: utf-8 -*-
"""
ftplibs.py: Utility functions for the myftp project.

This module provides core functionalities for:
- Reading and writing the application's configuration file (`ftp.opts`).
- Building the JSON loggers used by the server and client applications.
"""
import os
import re # For parsing key-value pairs
import sys
import logging
from pythonjsonlogger import jsonlogger

DEFAULT_OPTIONS_FILE = 'ftp.opts'

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s %(threadName)s %(module)s %(funcName)s %(lineno)d %(message)s'

# Defaults for ftp.opts
default_ftp_options = {
    "SERVER_HOSTNAME": "0.0.0.0",
    "SERVER_PORT": 60021,
    "SERVER_ROOT_DIR": "", # Empty means the directory the server was started in
    "LOG_FILEPATH": "/tmp/myftp.log",
    "LOG_LEVEL": "INFO",
    "LINE_MAXLEN": 4096,
    "CHUNK_SIZE": 65536,
    "CLIENT_PROMPT": "myftp> ",
    "CLIENT_DOWNLOAD_DIR": ".",
}


def _write_default_options(optionfile: str, defaults: dict):
    with open(optionfile, 'w') as opt_f:
        opt_f.write("# Server Configuration\n")
        opt_f.write(f"SERVER_HOSTNAME = {defaults['SERVER_HOSTNAME']}\n")
        opt_f.write(f"SERVER_PORT = {defaults['SERVER_PORT']}\n")
        opt_f.write("# Directory every new session starts in (leave empty for the server's launch directory)\n")
        opt_f.write(f"SERVER_ROOT_DIR = {defaults['SERVER_ROOT_DIR']}\n\n")

        opt_f.write("# Logging\n")
        opt_f.write(f"LOG_FILEPATH = {defaults['LOG_FILEPATH']}\n")
        opt_f.write(f"LOG_LEVEL = {defaults['LOG_LEVEL']} # DEBUG, INFO, WARNING, ERROR\n\n")

        opt_f.write("# Wire protocol\n")
        opt_f.write("# Longest command/status line kept, in bytes (longer lines are truncated)\n")
        opt_f.write(f"LINE_MAXLEN = {defaults['LINE_MAXLEN']}\n")
        opt_f.write("# Size of each socket read/write while streaming file contents\n")
        opt_f.write(f"CHUNK_SIZE = {defaults['CHUNK_SIZE']}\n\n")

        opt_f.write("# Client Defaults\n")
        opt_f.write(f"CLIENT_PROMPT = \"{defaults['CLIENT_PROMPT']}\"\n")
        opt_f.write(f"CLIENT_DOWNLOAD_DIR = {defaults['CLIENT_DOWNLOAD_DIR']}\n")


def _infer_value(value_str: str):
    """Converts a raw option value into bool, int or str."""
    if value_str.lower() == 'true':
        return True
    if value_str.lower() == 'false':
        return False
    if re.fullmatch(r"[+-]?\d+", value_str):
        return int(value_str)
    if len(value_str) >= 2 and value_str[0] == value_str[-1] and value_str[0] in ('"', "'"):
        return value_str[1:-1] # Remove surrounding quotes
    return value_str


def _strip_inline_comment(value_str: str) -> str:
    # Only unquoted values carry trailing comments, e.g. "INFO # DEBUG, INFO"
    if value_str[:1] in ('"', "'"):
        closing = value_str.find(value_str[0], 1)
        if closing != -1:
            return value_str[:closing + 1]
        return value_str
    return value_str.split(' #', 1)[0].strip()


### TRY READING AN OPTION FILE.  WRITE DEFAULT OPTIONS IF FILE DOES NOT EXIST
def readoptions(optionfile: str = DEFAULT_OPTIONS_FILE) -> dict:
    """
    Reads options from the specified file.
    Writes default options if the file does not exist.

    Args:
        optionfile: Path of the options file (`ftp.opts` by default).

    Returns:
        A dictionary of option name (upper case) to value. Keys missing from
        the file keep their defaults; unknown keys are added as found.
    """
    options = default_ftp_options.copy() # Start with defaults, override with file contents

    if not os.path.exists(optionfile):
        print(f"Options file '{optionfile}' not found. Creating with default values for '{os.path.basename(optionfile)}'.")
        _write_default_options(optionfile, default_ftp_options)
        print(f"A new default options file was created at '{optionfile}'. Please review and configure it.")
        return options

    with open(optionfile, 'r') as opt_f:
        for line_number, line_content in enumerate(opt_f, 1):
            line_content = line_content.strip()

            if not line_content or line_content.startswith("#"):
                continue # Skip blank lines and comments

            key_value_match = re.match(r"^\s*([A-Za-z0-9_]+)\s*=\s*(.*)", line_content)
            if not key_value_match:
                print(f"Warning: Malformed line in '{optionfile}' on line {line_number}: '{line_content}'. Skipping.")
                continue

            key = key_value_match.group(1).strip().upper()
            value = _infer_value(_strip_inline_comment(key_value_match.group(2).strip()))

            if key not in options:
                print(f"Warning: Unknown option '{key}' found in '{optionfile}' on line {line_number}. It will be added to the options dictionary.")
            options[key] = value

    # Ensure critical keys have sane values after parsing
    if not isinstance(options.get("SERVER_PORT"), int) or not (0 < options["SERVER_PORT"] <= 65535):
        print(f"Warning: SERVER_PORT is missing or invalid. Using default {default_ftp_options['SERVER_PORT']}.")
        options["SERVER_PORT"] = default_ftp_options['SERVER_PORT']

    if not isinstance(options.get("LINE_MAXLEN"), int) or options["LINE_MAXLEN"] < 2:
        print(f"Warning: LINE_MAXLEN is missing or invalid. Using default {default_ftp_options['LINE_MAXLEN']}.")
        options["LINE_MAXLEN"] = default_ftp_options['LINE_MAXLEN']

    if not isinstance(options.get("CHUNK_SIZE"), int) or options["CHUNK_SIZE"] <= 0:
        print(f"Warning: CHUNK_SIZE is missing or invalid. Using default {default_ftp_options['CHUNK_SIZE']}.")
        options["CHUNK_SIZE"] = default_ftp_options['CHUNK_SIZE']

    if not isinstance(options.get("LOG_LEVEL"), str) or not isinstance(logging.getLevelName(options["LOG_LEVEL"].upper()), int):
        print(f"Warning: LOG_LEVEL is missing or invalid. Using default {default_ftp_options['LOG_LEVEL']}.")
        options["LOG_LEVEL"] = default_ftp_options['LOG_LEVEL']

    return options


def setup_logger(name: str, log_level_str: str = "INFO", log_filepath: str | None = None, stream=None) -> logging.Logger:
    """Builds a JSON logger writing to a stream and, optionally, a log file.

    Args:
        name: Logger name, usually the application class name.
        log_level_str: Level name such as "DEBUG" or "INFO".
        log_filepath: Append-mode log file; console only when empty.
        stream: Console stream, stdout by default.

    Returns:
        The configured logger. Calling this again for the same name replaces
        the handlers instead of stacking duplicates.
    """
    logger = logging.getLogger(name)
    # Prevent propagation to root logger if it already has handlers, to avoid duplicate console logs
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_level = getattr(logging, log_level_str.upper(), logging.INFO)
    logger.setLevel(log_level)

    formatter = jsonlogger.JsonFormatter(LOG_FORMAT, timestamp=True)

    stream_handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(log_level)
    logger.addHandler(stream_handler)

    if log_filepath:
        try:
            log_dir = os.path.dirname(log_filepath)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(log_filepath, mode='a')
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger.addHandler(file_handler)
            logger.debug("Logging configured to console and file.", extra={'log_filepath': log_filepath, 'log_level': log_level_str})
        except OSError as e:
            logger.error("Failed to set up file logging.", exc_info=True, extra={'log_filepath': log_filepath, 'error_details': str(e)})
    else:
        logger.debug("Logging configured to console only (no log_filepath specified).", extra={'log_level': log_level_str})

    return logger
