# -*- coding: utf-8 -*-
"""
server_app.py: Main application for the myftp server.

Loads `ftp.opts`, sets up JSON logging and serves clients one at a time,
each in its own session rooted at the server's start directory.
"""
import os
import sys
import json
import time
import argparse
import traceback
import threading

from ftplibs import readoptions, setup_logger, DEFAULT_OPTIONS_FILE
from ftp_transfer import FtpTransferServer


def _startup_print(level: str, message: str, **fields):
    # Used before the logger exists, same shape as the JSON log records
    print(json.dumps({"timestamp": time.strftime('%Y-%m-%dT%H:%M:%S%z'), "level": level, "name": "FtpServerApp", "message": message, **fields}))


class FtpServerApp:
    KEEPALIVE = True

    def __init__(self, options_file: str = DEFAULT_OPTIONS_FILE, port: int | None = None,
                 host: str | None = None, root_dir: str | None = None):
        self.options_file = options_file
        self.server_hostname: str = "0.0.0.0"
        self.server_port: int = 60021
        self.root_dir: str = os.getcwd()
        self.log_filepath: str = "/tmp/myftp.log"
        self.log_level_str: str = "INFO"
        self.line_maxlen: int = 4096
        self.chunk_size: int = 65536

        self.config = {}
        self._load_configuration()
        # Command-line values win over the options file
        if port is not None:
            self.server_port = port
        if host is not None:
            self.server_hostname = host
        if root_dir is not None:
            self.root_dir = os.path.abspath(root_dir)

        self.logger = setup_logger(self.__class__.__name__, self.log_level_str, self.log_filepath)
        self.logger.info("Initializing FtpServerApp...", extra={'options_file': self.options_file})

        self.ftp_server = FtpTransferServer(
            host=self.server_hostname,
            port=self.server_port,
            start_dir=self.root_dir,
            line_maxlen=self.line_maxlen,
            chunk_size=self.chunk_size,
            logger=self.logger
        )
        self.shutdown_event = threading.Event()
        self.sessions_served = 0

    def _load_configuration(self):
        _startup_print("INFO", f"Loading configuration from '{self.options_file}'...")
        try:
            self.config = readoptions(self.options_file)
        except OSError as e:
            _startup_print("CRITICAL", f"Could not read options file '{self.options_file}': {e}", error_details=str(e), traceback=traceback.format_exc())
            raise

        self.server_hostname = self.config.get('SERVER_HOSTNAME', '0.0.0.0')
        self.server_port = int(self.config.get('SERVER_PORT', 60021))
        root = self.config.get('SERVER_ROOT_DIR', '')
        self.root_dir = os.path.abspath(root) if root else os.getcwd()
        self.log_filepath = self.config.get('LOG_FILEPATH', '/tmp/myftp.log')
        self.log_level_str = str(self.config.get('LOG_LEVEL', 'INFO')).upper()
        self.line_maxlen = int(self.config.get('LINE_MAXLEN', 4096))
        self.chunk_size = int(self.config.get('CHUNK_SIZE', 65536))

    def start(self) -> bool:
        """Binds the listening socket. `run` calls this if needed."""
        if self.ftp_server.server_socket is not None:
            return True
        if not self.ftp_server.start():
            self.logger.critical("FtpTransferServer failed to start. Server cannot run.", extra={'port': self.server_port})
            return False
        self.server_port = self.ftp_server.port
        return True

    def run(self):
        if not self.start():
            return
        self.logger.info("FtpServerApp serving.", extra={'listen_host': self.server_hostname, 'listen_port': self.server_port, 'root_dir': self.root_dir})
        self.shutdown_event.clear()

        try:
            while self.KEEPALIVE and not self.shutdown_event.is_set():
                accepted = self.ftp_server.accept_connection()
                if accepted is None:
                    if self.KEEPALIVE and not self.shutdown_event.is_set():
                        time.sleep(0.1)
                    continue
                conn, addr = accepted
                # One client at a time: the next accept waits for this session to finish
                try:
                    self.ftp_server.handle_client(conn, addr)
                except Exception:
                    self.logger.error("Session failed unexpectedly.", exc_info=True, extra={'client_ip': addr[0], 'client_port': addr[1]})
                self.sessions_served += 1
                self.logger.info("Waiting for next client.", extra={'sessions_served': self.sessions_served})
        except KeyboardInterrupt:
            self.logger.info("KeyboardInterrupt received, initiating shutdown...")
        finally:
            self.stop_server()

    def stop_server(self):
        if not self.KEEPALIVE and self.shutdown_event.is_set():
            self.logger.debug("Server stop already in progress or completed.")
            return
        self.logger.info("Initiating server shutdown...")
        self.KEEPALIVE = False
        self.shutdown_event.set()
        self.ftp_server.stop()
        self.logger.info("Server shut down complete.")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="myftp server: serves its directory over the myftp protocol.")
    parser.add_argument("port", type=int, nargs="?", help="Port to listen on (overrides SERVER_PORT).")
    parser.add_argument("--host", help="Address to bind (overrides SERVER_HOSTNAME).")
    parser.add_argument("--root", help="Directory each session starts in (overrides SERVER_ROOT_DIR).")
    parser.add_argument("--options", default=DEFAULT_OPTIONS_FILE, help=f"Options file (default: {DEFAULT_OPTIONS_FILE}).")
    args = parser.parse_args(argv)

    if args.port is not None and not (0 < args.port <= 65535):
        parser.error("Invalid port.")

    _startup_print("INFO", "Application starting up...")
    app = None
    try:
        app = FtpServerApp(options_file=args.options, port=args.port, host=args.host, root_dir=args.root)
        app.run()
    except Exception as e:
        logger_instance = getattr(app, 'logger', None)
        if logger_instance:
            logger_instance.critical("CRITICAL Top-Level Error during app instantiation or run.", exc_info=True, extra={'error_details': str(e)})
        else:
            _startup_print("CRITICAL", f"CRITICAL Top-Level Error: {e}", error_details=str(e), traceback=traceback.format_exc())
        return 1
    finally:
        if app and (app.KEEPALIVE or not app.shutdown_event.is_set()):
            app.stop_server()
        _startup_print("INFO", "Application terminated.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
