# -*- coding: utf-8 -*-
"""
ftp_transfer.py: Server and client ends of a myftp session.

This module defines FtpTransferServer, which accepts connections and runs
the per-connection command loop, and FtpTransferClient, which sends command
lines and consumes the matching replies (status line, text blob, file
download or file upload).
"""
import os
import socket
import logging

from command_protocol import (
    Command, ReplyStatus, SessionContext, FileSystemCommands,
    VERB_GET, VERB_PUT, VERB_QUIT, VERBS,
    MSG_UNKNOWN_COMMAND, MSG_FILE_NOT_FOUND, MSG_UPLOAD_SIZE_FAILED,
    MSG_UPLOAD_CREATE_FAILED, MSG_UPLOAD_CONNECTION_CLOSED, MSG_UPLOAD_WRITE_FAILED,
)
from wire_transport import (
    SessionTransport, Line, Blob, TransportError, ConnectionClosed, IncompleteTransfer, SinkWriteError,
    LINE_MAXLEN, CHUNK_SIZE,
)

ACCEPT_POLL_SECONDS = 0.5


class FtpTransferServer:
    """
    Server for myftp sessions.

    Listens for client connections and serves them one at a time. The
    SessionContext is reset to `start_dir` when a connection is accepted,
    and each connection is run to completion before the next one.
    """
    def __init__(self, host: str, port: int, start_dir: str, line_maxlen: int = LINE_MAXLEN,
                 chunk_size: int = CHUNK_SIZE, logger: logging.Logger | None = None):
        """
        Initializes the FtpTransferServer.

        Args:
            host: The hostname or IP address to bind to.
            port: The port number to listen on (0 picks a free port).
            start_dir: Directory every session starts in.
            line_maxlen: Bound on received command lines.
            chunk_size: Socket read/write size while streaming files.
            logger: Logger to report through; a module logger by default.
        """
        self.host = host
        self.port = port
        self.start_dir = os.path.abspath(start_dir)
        self.line_maxlen = line_maxlen
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(__name__)
        self.server_socket: socket.socket | None = None

        if not os.path.isdir(self.start_dir):
            raise OSError(f"Session start directory {self.start_dir} does not exist")
        self.context = SessionContext(self.start_dir)

    def start(self) -> bool:
        """
        Binds to the host/port and begins listening.

        Returns:
            True if the server started successfully, False otherwise.
        """
        try:
            self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(10)
            # Periodic wake-up so a stop request is noticed while idle
            self.server_socket.settimeout(ACCEPT_POLL_SECONDS)
            self.port = self.server_socket.getsockname()[1]
            self.logger.info("Server listening.", extra={'host': self.host, 'port': self.port, 'start_dir': self.start_dir})
            return True
        except OSError as e:
            self.logger.error("Could not start server.", extra={'host': self.host, 'port': self.port, 'error_details': str(e)})
            if self.server_socket:
                self.server_socket.close()
            self.server_socket = None
            return False

    def accept_connection(self) -> tuple[socket.socket, tuple[str, int]] | None:
        """
        Accepts a new client connection.

        Returns:
            A tuple (conn, addr) if a connection is accepted, None otherwise.
        """
        server_socket = self.server_socket # stop() may clear the attribute from another thread
        if not server_socket:
            self.logger.error("Server not started. Cannot accept connections.")
            return None
        try:
            conn, addr = server_socket.accept()
            self.logger.info("Accepted connection.", extra={'client_ip': addr[0], 'client_port': addr[1]})
            return conn, addr
        except TimeoutError:
            return None
        except OSError as e:
            self.logger.debug("Accept interrupted.", extra={'error_details': str(e)})
            return None

    def handle_client(self, conn: socket.socket, addr: tuple[str, int]):
        """
        Runs the command loop for one connection until quit or disconnect.

        Args:
            conn: The client's socket connection object.
            addr: The client's address (ip, port).
        """
        log_ctx = {'client_ip': addr[0], 'client_port': addr[1]}
        transport = SessionTransport(conn, self.line_maxlen, self.chunk_size)
        context = self.context
        context.reset()
        commands = FileSystemCommands(context, self.logger)
        try:
            while True:
                try:
                    line = transport.read_frame(Line)
                except ConnectionClosed:
                    self.logger.info("Client closed the connection.", extra=log_ctx)
                    break
                command = Command.parse(line.text)
                self.logger.debug("Command received.", extra={**log_ctx, 'verb': command.verb, 'argument': command.argument, 'cwd': context.cwd})
                if not self.dispatch(transport, commands, command, log_ctx):
                    self.logger.info("Client quit.", extra=log_ctx)
                    break
        except TransportError as e:
            self.logger.warning("Session ended by transport error.", extra={**log_ctx, 'error_details': str(e)})
        finally:
            transport.close()
            self.logger.info("Connection closed.", extra=log_ctx)

    def dispatch(self, transport: SessionTransport, commands: FileSystemCommands, command: Command, log_ctx: dict) -> bool:
        """
        Executes one command, including any blob transfer, and replies.

        Returns:
            False once the session should end, True otherwise.
        """
        if command.verb == VERB_QUIT:
            self._send_status(transport, ReplyStatus.success())
            return False
        if command.verb == VERB_GET:
            self.send_file_to_client(transport, commands, command.argument, log_ctx)
            return True
        if command.verb == VERB_PUT:
            return self.receive_file_from_client(transport, commands, command.argument, log_ctx)
        if command.verb not in VERBS:
            self._send_status(transport, ReplyStatus.err(MSG_UNKNOWN_COMMAND))
            return True

        reply = commands.execute(command)
        self._send_status(transport, reply.status)
        if reply.status.ok:
            transport.write_frame(Blob(reply.payload or b""))
        return True

    def send_file_to_client(self, transport: SessionTransport, commands: FileSystemCommands, path: str | None, log_ctx: dict):
        opened = commands.open_for_get(path)
        if opened is None:
            self._send_status(transport, ReplyStatus.err(MSG_FILE_NOT_FOUND))
            return
        f, size = opened
        with f:
            self._send_status(transport, ReplyStatus.success())
            sent = transport.send_blob_from(f, size)
        self.logger.info("File sent.", extra={**log_ctx, 'path': path, 'bytes': sent})

    def receive_file_from_client(self, transport: SessionTransport, commands: FileSystemCommands, path: str | None, log_ctx: dict) -> bool:
        """
        Handles `put`: OK, then the client's length field and bytes, then a
        second status line.

        Returns:
            False if the connection can no longer be framed, True otherwise.
        """
        self._send_status(transport, ReplyStatus.success())
        try:
            size = transport.recv_u64()
        except ConnectionClosed:
            self._send_status_quietly(transport, ReplyStatus.err(MSG_UPLOAD_SIZE_FAILED))
            return False

        f = commands.open_for_put(path)
        if f is None:
            try:
                transport.discard(size)
            except ConnectionClosed:
                return False
            self.logger.warning("Upload rejected, payload discarded.", extra={**log_ctx, 'path': path, 'bytes': size})
            self._send_status(transport, ReplyStatus.err(MSG_UPLOAD_CREATE_FAILED))
            return True

        try:
            transport.recv_blob_into(f, size)
        except IncompleteTransfer as e:
            self._close_upload(f, path, log_ctx)
            self.logger.warning("Upload cut short.", extra={**log_ctx, 'path': path, 'expected': e.expected, 'received': e.received})
            self._send_status_quietly(transport, ReplyStatus.err(MSG_UPLOAD_CONNECTION_CLOSED))
            return False
        except SinkWriteError as e:
            self._close_upload(f, path, log_ctx)
            self.logger.error("Disk write failed during upload.", extra={**log_ctx, 'path': path, 'error_details': str(e.__cause__)})
            try:
                transport.discard(e.expected - e.consumed)
            except ConnectionClosed:
                return False
            self._send_status(transport, ReplyStatus.err(MSG_UPLOAD_WRITE_FAILED))
            return True

        # Buffered bytes reach the disk on close; every payload byte is already consumed
        if not self._close_upload(f, path, log_ctx):
            self._send_status(transport, ReplyStatus.err(MSG_UPLOAD_WRITE_FAILED))
            return True
        self.logger.info("File received.", extra={**log_ctx, 'path': path, 'bytes': size})
        self._send_status(transport, ReplyStatus.success())
        return True

    def _close_upload(self, f, path: str | None, log_ctx: dict) -> bool:
        """Closes an upload target, returning False if flushing it failed."""
        try:
            f.close()
        except OSError as e:
            self.logger.error("Disk write failed while closing upload.", extra={**log_ctx, 'path': path, 'error_details': str(e)})
            return False
        return True

    def _send_status(self, transport: SessionTransport, status: ReplyStatus):
        transport.write_frame(Line(status.to_line()))

    def _send_status_quietly(self, transport: SessionTransport, status: ReplyStatus):
        # The connection is already failing; a status line is sent if it still can be
        try:
            self._send_status(transport, status)
        except TransportError:
            pass

    def stop(self):
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                self.logger.debug("Error closing server socket.", extra={'error_details': str(e)})
            finally:
                self.server_socket = None


class FtpTransferClient:
    """
    Client for myftp sessions.

    Sends one command line at a time and reads the reply that belongs to it.
    The caller decides, from the verb, how the payload after an `OK` status
    must be consumed.
    """
    def __init__(self, host: str, port: int, line_maxlen: int = LINE_MAXLEN, chunk_size: int = CHUNK_SIZE,
                 download_dir: str = ".", logger: logging.Logger | None = None):
        self.host = host
        self.port = port
        self.line_maxlen = line_maxlen
        self.chunk_size = chunk_size
        self.download_dir = download_dir
        self.logger = logger or logging.getLogger(__name__)
        self.transport: SessionTransport | None = None

    def connect(self) -> bool:
        """
        Connects to the server.

        Returns:
            True if connection was successful, False otherwise.
        """
        try:
            conn = socket.create_connection((self.host, self.port))
        except OSError as e:
            self.logger.error("Connection failed.", extra={'host': self.host, 'port': self.port, 'error_details': str(e)})
            return False
        self.transport = SessionTransport(conn, self.line_maxlen, self.chunk_size)
        self.logger.info("Connected to server.", extra={'host': self.host, 'port': self.port})
        return True

    def disconnect(self):
        """Closes the connection to the server."""
        if self.transport:
            self.transport.close()
            self.transport = None
            self.logger.info("Disconnected from server.")

    def send_command(self, command: Command) -> ReplyStatus:
        """Sends a command line and returns the status line that answers it."""
        self.transport.write_frame(Line(command.to_line()))
        return ReplyStatus.parse(self.transport.read_frame(Line).text)

    def receive_text(self) -> bytes:
        """Reads the text blob that follows an `OK` to pwd, ls, cd, mkdir or delete."""
        return self.transport.read_frame(Blob).data

    def local_name_for(self, remote_path: str) -> str:
        """Downloads are saved under the last segment of the remote path."""
        return os.path.join(self.download_dir, remote_path.rsplit('/', 1)[-1])

    def download_file(self, remote_path: str) -> str:
        """
        Receives the file blob that follows an `OK` to `get`.

        Returns:
            The local path written.

        Raises:
            OSError: The local file could not be created; the incoming
                bytes have already been discarded.
        """
        size = self.transport.recv_u64()
        local_path = self.local_name_for(remote_path)
        try:
            f = open(local_path, 'wb')
        except OSError:
            self.transport.discard(size)
            raise
        with f:
            try:
                self.transport.recv_blob_into(f, size)
            except SinkWriteError as e:
                self.transport.discard(e.expected - e.consumed)
                raise e.__cause__
        self.logger.debug("Download complete.", extra={'remote_path': remote_path, 'local_path': local_path, 'bytes': size})
        return local_path

    def upload_file(self, local_path: str) -> ReplyStatus:
        """
        Sends a file after the server's `OK` to `put` and returns the
        server's final status.

        If the local file cannot be read an empty upload is sent so the
        stream stays aligned, and the OSError is logged.
        """
        try:
            f = open(local_path, 'rb')
        except OSError as e:
            self.logger.error("Cannot open upload source, sending an empty upload.", extra={'local_path': local_path, 'error_details': str(e)})
            self.transport.send_u64(0)
        else:
            with f:
                size = os.fstat(f.fileno()).st_size
                self.transport.send_blob_from(f, size)
            self.logger.debug("Upload sent.", extra={'local_path': local_path, 'bytes': size})
        return ReplyStatus.parse(self.transport.read_frame(Line).text)
