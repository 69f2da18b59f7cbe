# -*- coding: utf-8 -*-
"""
client_app.py: Interactive client for the myftp server.

Reads one command per prompt, sends it to the server and prints the reply.
`get` saves the file under the last segment of the remote path, `put`
uploads a local file under the name typed.
"""
import os
import sys
import argparse

from ftplibs import readoptions, setup_logger, DEFAULT_OPTIONS_FILE
from command_protocol import Command, VERB_GET, VERB_PUT, VERB_QUIT
from ftp_transfer import FtpTransferClient
from wire_transport import TransportError


class FtpClientApp:
    """
    myftp client application.
    Handles the connection to the server and the prompt/reply cycle.
    """
    def __init__(self, host: str | None = None, port: int | None = None, options_file: str = DEFAULT_OPTIONS_FILE,
                 stdin=None, stdout=None, stderr=None):
        self.options_file = options_file
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr

        config = readoptions(self.options_file)
        self.server_hostname: str = host or config.get('SERVER_HOSTNAME', 'localhost')
        if self.server_hostname == '0.0.0.0':
            self.server_hostname = 'localhost'
        self.server_port: int = port if port is not None else int(config.get('SERVER_PORT', 60021))
        self.prompt: str = str(config.get('CLIENT_PROMPT', 'myftp> '))
        self.download_dir: str = str(config.get('CLIENT_DOWNLOAD_DIR', '.'))

        # Log to stderr so records do not mix with command output
        self.logger = setup_logger(self.__class__.__name__, str(config.get('LOG_LEVEL', 'INFO')),
                                   config.get('LOG_FILEPATH'), stream=self.stderr)
        os.makedirs(self.download_dir, exist_ok=True)

        self.ftp_client = FtpTransferClient(
            host=self.server_hostname,
            port=self.server_port,
            line_maxlen=int(config.get('LINE_MAXLEN', 4096)),
            chunk_size=int(config.get('CHUNK_SIZE', 65536)),
            download_dir=self.download_dir,
            logger=self.logger
        )

    def _read_input(self) -> str | None:
        self.stdout.write(self.prompt)
        self.stdout.flush()
        line = self.stdin.readline()
        if not line:
            return None
        return line.rstrip('\r\n')

    def handle_input(self, user_input: str) -> bool:
        """
        Sends one command and consumes its reply.

        Returns:
            False when the session is over, True to prompt again.
        """
        command = Command.parse(user_input)
        verb = command.verb.lower()
        status = self.ftp_client.send_command(command)

        if not status.ok:
            print(status.to_line(), file=self.stderr)
            return verb != VERB_QUIT

        if verb == VERB_QUIT:
            return False
        if verb == VERB_GET:
            remote_path = command.argument or ""
            try:
                local_path = self.ftp_client.download_file(remote_path)
            except OSError as e:
                print(f"Cannot save {remote_path}: {e}", file=self.stderr)
            else:
                print(f"Downloaded {os.path.basename(local_path)}", file=self.stdout)
        elif verb == VERB_PUT:
            final = self.ftp_client.upload_file(command.argument or "")
            if final.ok:
                print("Upload complete.", file=self.stdout)
            else:
                print(final.to_line(), file=self.stderr)
        else:
            self.stdout.write(self.ftp_client.receive_text().decode('utf-8', errors='replace'))
        self.stdout.flush()
        return True

    def run(self) -> int:
        if not self.ftp_client.connect():
            print("Connection failed.", file=self.stderr)
            return 1
        try:
            while True:
                user_input = self._read_input()
                if user_input is None:
                    user_input = VERB_QUIT # End of console input
                if not user_input:
                    continue
                if not self.handle_input(user_input):
                    break
        except TransportError as e:
            self.logger.error("Connection to server lost.", extra={'error_details': str(e)})
            return 1
        except KeyboardInterrupt:
            self.logger.info("Interrupted.")
        finally:
            self.ftp_client.disconnect()
        return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="myftp client: interactive access to a myftp server.")
    parser.add_argument("host", help="Server hostname or IP address.")
    parser.add_argument("port", type=int, help="Server port.")
    parser.add_argument("--options", default=DEFAULT_OPTIONS_FILE, help=f"Options file (default: {DEFAULT_OPTIONS_FILE}).")
    args = parser.parse_args(argv)

    app = FtpClientApp(host=args.host, port=args.port, options_file=args.options)
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
