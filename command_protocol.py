# -*- coding: utf-8 -*-
"""
command_protocol.py: Commands, status lines and server-side execution.

A client request is a single text line, `<verb>[ <argument>]`. The server
answers every request with exactly one status line, `OK` or
`ERR <message>`, which may be followed by a length-prefixed payload.

`FileSystemCommands` runs the filesystem side of each verb against a
`SessionContext`, the per-connection working directory. Nothing here
touches the process-wide current directory.
"""
import os
import logging
from dataclasses import dataclass
from typing import BinaryIO

VERB_PWD = "pwd"
VERB_LS = "ls"
VERB_CD = "cd"
VERB_MKDIR = "mkdir"
VERB_DELETE = "delete"
VERB_GET = "get"
VERB_PUT = "put"
VERB_QUIT = "quit"

VERBS = (VERB_PWD, VERB_LS, VERB_CD, VERB_MKDIR, VERB_DELETE, VERB_GET, VERB_PUT, VERB_QUIT)

STATUS_OK = "OK"
STATUS_ERR = "ERR"

MSG_UNKNOWN_COMMAND = "Unknown command."
MSG_PWD_FAILED = "Failed to get current directory."
MSG_LS_FAILED = "Could not open current directory."
MSG_CD_FAILED = "Failed to change directory."
MSG_CD_DONE = "Directory changed successfully.\n"
MSG_MKDIR_FAILED = "Failed to create directory."
MSG_MKDIR_DONE = "Directory created successfully.\n"
MSG_DELETE_FAILED = "Failed to delete file."
MSG_FILE_NOT_FOUND = "File not found."
MSG_UPLOAD_SIZE_FAILED = "Failed to read upload size."
MSG_UPLOAD_CREATE_FAILED = "Failed to create local file on server."
MSG_UPLOAD_CONNECTION_CLOSED = "Connection closed during upload."
MSG_UPLOAD_WRITE_FAILED = "Disk write error on server."


@dataclass
class Command:
    verb: str
    argument: str | None = None

    @classmethod
    def parse(cls, line: str) -> "Command":
        """
        Splits a command line into verb and argument.

        The verb is the first whitespace-delimited token. The argument is
        everything after the first space, taken verbatim; it may contain
        spaces of its own and is not unquoted.
        """
        if line.endswith('\r'):
            line = line[:-1]
        tokens = line.split(None, 1)
        verb = tokens[0] if tokens else ""
        space = line.find(' ')
        argument = line[space + 1:] if space != -1 else None
        return cls(verb, argument)

    def to_line(self) -> str:
        if self.argument is None:
            return self.verb
        return f"{self.verb} {self.argument}"


@dataclass
class ReplyStatus:
    ok: bool
    reason: str = ""

    @classmethod
    def success(cls) -> "ReplyStatus":
        return cls(True)

    @classmethod
    def err(cls, reason: str) -> "ReplyStatus":
        return cls(False, reason)

    @classmethod
    def parse(cls, line: str) -> "ReplyStatus":
        if line == STATUS_OK:
            return cls(True)
        if line == STATUS_ERR:
            return cls.err("")
        if line.startswith(STATUS_ERR + " "):
            return cls(False, line[len(STATUS_ERR) + 1:])
        # Anything else is not a success; keep it whole so it can be shown
        return cls(False, line)

    def to_line(self) -> str:
        if self.ok:
            return STATUS_OK
        if not self.reason:
            return STATUS_ERR
        return f"{STATUS_ERR} {self.reason}"


@dataclass
class Reply:
    """A status plus the text payload that follows it on success."""
    status: ReplyStatus
    payload: bytes | None = None

    @classmethod
    def text(cls, message: str) -> "Reply":
        return cls(ReplyStatus.success(), message.encode('utf-8'))

    @classmethod
    def error(cls, reason: str) -> "Reply":
        return cls(ReplyStatus.err(reason))


class SessionContext:
    """The working directory of one connection."""

    def __init__(self, start_dir: str):
        self.start_dir = os.path.abspath(start_dir)
        self.cwd = self.start_dir

    def reset(self):
        self.cwd = self.start_dir

    def resolve(self, path: str | None) -> str:
        """Resolves a client-supplied path against the session directory."""
        if not path:
            return ""
        return os.path.normpath(os.path.join(self.cwd, path))


class FileSystemCommands:
    """
    Server-side execution of the command table.

    Text-producing verbs return a `Reply`; `get` and `put` hand back open
    files so the caller can stream them over the connection. Filesystem
    failures are turned into `ERR` replies and never raised.
    """
    def __init__(self, context: SessionContext, logger: logging.Logger | None = None):
        self.context = context
        self.logger = logger or logging.getLogger(__name__)

    def execute(self, command: Command) -> Reply:
        """Runs one of the text verbs (pwd, ls, cd, mkdir, delete)."""
        handlers = {
            VERB_PWD: self.pwd,
            VERB_LS: self.ls,
            VERB_CD: self.cd,
            VERB_MKDIR: self.mkdir,
            VERB_DELETE: self.delete,
        }
        handler = handlers.get(command.verb)
        if handler is None:
            return Reply.error(MSG_UNKNOWN_COMMAND)
        if command.verb in (VERB_PWD, VERB_LS):
            return handler()
        return handler(command.argument or "")

    def pwd(self) -> Reply:
        if not os.path.isdir(self.context.cwd):
            self.logger.warning("Session directory is no longer readable.", extra={'cwd': self.context.cwd})
            return Reply.error(MSG_PWD_FAILED)
        return Reply.text(f"{self.context.cwd}\n")

    def ls(self) -> Reply:
        try:
            with os.scandir(self.context.cwd) as it:
                names = [entry.name for entry in it]
        except OSError as e:
            self.logger.warning("Listing failed.", extra={'cwd': self.context.cwd, 'error_details': str(e)})
            return Reply.error(MSG_LS_FAILED)
        return Reply.text("".join(f"{name}\n" for name in names))

    def cd(self, path: str) -> Reply:
        target = self.context.resolve(path)
        if not target or not os.path.isdir(target) or not os.access(target, os.X_OK):
            return Reply.error(MSG_CD_FAILED)
        self.context.cwd = target
        return Reply.text(MSG_CD_DONE)

    def mkdir(self, path: str) -> Reply:
        target = self.context.resolve(path)
        try:
            if not target:
                raise FileNotFoundError(path)
            os.mkdir(target, 0o777)
        except OSError as e:
            self.logger.warning("mkdir failed.", extra={'target': target, 'error_details': str(e)})
            return Reply.error(MSG_MKDIR_FAILED)
        return Reply.text(MSG_MKDIR_DONE)

    def delete(self, path: str) -> Reply:
        target = self.context.resolve(path)
        try:
            if not target:
                raise FileNotFoundError(path)
            if os.path.isdir(target) and not os.path.islink(target):
                os.rmdir(target)
            else:
                os.remove(target)
        except OSError as e:
            self.logger.warning("delete failed.", extra={'target': target, 'error_details': str(e)})
            return Reply.error(MSG_DELETE_FAILED)
        return Reply.text(f"File '{path}' deleted successfully.\n")

    def open_for_get(self, path: str | None) -> tuple[BinaryIO, int] | None:
        """
        Opens a file for download.

        Returns:
            (file object, size in bytes), or None if it cannot be read.
        """
        target = self.context.resolve(path)
        if not target or not os.path.isfile(target):
            return None
        try:
            f = open(target, 'rb')
        except OSError as e:
            self.logger.warning("Cannot open file for download.", extra={'target': target, 'error_details': str(e)})
            return None
        try:
            size = os.fstat(f.fileno()).st_size
        except OSError:
            f.close()
            return None
        return f, size

    def open_for_put(self, path: str | None) -> BinaryIO | None:
        """Creates (or truncates) the upload target, or returns None."""
        target = self.context.resolve(path)
        if not target:
            return None
        try:
            return open(target, 'wb')
        except OSError as e:
            self.logger.warning("Cannot create upload target.", extra={'target': target, 'error_details': str(e)})
            return None
