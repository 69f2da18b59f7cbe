import os
import pytest
from command_protocol import (
    Command, ReplyStatus, Reply, SessionContext, FileSystemCommands,
    MSG_CD_FAILED, MSG_CD_DONE, MSG_MKDIR_DONE, MSG_MKDIR_FAILED, MSG_DELETE_FAILED, MSG_UNKNOWN_COMMAND,
)


@pytest.fixture
def commands(tmp_path):
    return FileSystemCommands(SessionContext(str(tmp_path)))

# --- Parsing ---

@pytest.mark.parametrize("line,verb,argument", [
    ("pwd", "pwd", None),
    ("ls\r", "ls", None),
    ("get notes.txt", "get", "notes.txt"),
    ("put my file.txt", "put", "my file.txt"),
    ("cd  padded", "cd", " padded"),
    ("", "", None),
    ("frobnicate now", "frobnicate", "now"),
])
def test_command_parse(line, verb, argument):
    command = Command.parse(line)
    assert command.verb == verb
    assert command.argument == argument

def test_command_to_line_round_trips_argument_verbatim():
    command = Command("put", "dir/with space.bin")
    assert command.to_line() == "put dir/with space.bin"
    assert Command.parse(command.to_line()) == command
    assert Command("quit").to_line() == "quit"

@pytest.mark.parametrize("line,ok,reason", [
    ("OK", True, ""),
    ("ERR File not found.", False, "File not found."),
    ("ERR Unknown command.", False, "Unknown command."),
    ("ERR", False, ""),
    ("garbage", False, "garbage"),
])
def test_reply_status_parse(line, ok, reason):
    status = ReplyStatus.parse(line)
    assert status.ok is ok
    assert status.reason == reason

def test_bare_err_line_is_not_doubled():
    assert ReplyStatus.parse("ERR").to_line() == "ERR"

def test_reply_status_lines():
    assert ReplyStatus.success().to_line() == "OK"
    assert ReplyStatus.err("Failed to delete file.").to_line() == "ERR Failed to delete file."

def test_error_reply_carries_no_payload():
    reply = Reply.error("nope")
    assert reply.status.ok is False
    assert reply.payload is None

# --- Session context ---

def test_context_resolves_relative_and_absolute_paths(tmp_path):
    context = SessionContext(str(tmp_path))
    assert context.resolve("a/b") == os.path.join(str(tmp_path), "a", "b")
    assert context.resolve("/etc") == "/etc"
    assert context.resolve("sub/..") == str(tmp_path)
    assert context.resolve("") == ""
    assert context.resolve(None) == ""

def test_context_reset_returns_to_start_directory(tmp_path):
    (tmp_path / "sub").mkdir()
    context = SessionContext(str(tmp_path))
    FileSystemCommands(context).cd("sub")
    assert context.cwd == str(tmp_path / "sub")
    context.reset()
    assert context.cwd == str(tmp_path)

def test_commands_never_change_process_directory(tmp_path, commands):
    before = os.getcwd()
    (tmp_path / "elsewhere").mkdir()
    commands.cd("elsewhere")
    assert os.getcwd() == before

# --- Execution table ---

def test_pwd_is_idempotent(commands, tmp_path):
    first = commands.execute(Command("pwd"))
    second = commands.execute(Command("pwd"))
    assert first.status.ok
    assert first.payload == f"{tmp_path}\n".encode()
    assert second.payload == first.payload

def test_pwd_fails_when_directory_vanishes(tmp_path):
    gone = tmp_path / "gone"
    gone.mkdir()
    commands = FileSystemCommands(SessionContext(str(gone)))
    gone.rmdir()
    reply = commands.execute(Command("pwd"))
    assert reply.status == ReplyStatus.err("Failed to get current directory.")

def test_ls_lists_entries_without_dot_entries(commands, tmp_path):
    (tmp_path / "a.txt").write_text("hello")
    (tmp_path / "b").mkdir()
    reply = commands.execute(Command("ls"))
    assert reply.status.ok
    lines = reply.payload.decode().split("\n")
    assert lines[-1] == "" # every entry ends with a newline
    assert sorted(lines[:-1]) == ["a.txt", "b"]

def test_ls_of_empty_directory_is_empty_payload(commands):
    reply = commands.execute(Command("ls"))
    assert reply.status.ok
    assert reply.payload == b""

def test_cd_success_and_failure(commands, tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "file.txt").write_text("x")

    assert commands.execute(Command("cd", "missing")) == Reply.error(MSG_CD_FAILED)
    assert commands.context.cwd == str(tmp_path)
    assert commands.execute(Command("cd", "file.txt")) == Reply.error(MSG_CD_FAILED)
    assert commands.execute(Command("cd")) == Reply.error(MSG_CD_FAILED)

    reply = commands.execute(Command("cd", "sub"))
    assert reply == Reply.text(MSG_CD_DONE)
    assert commands.context.cwd == str(tmp_path / "sub")
    commands.execute(Command("cd", ".."))
    assert commands.context.cwd == str(tmp_path)

def test_mkdir_creates_relative_to_session_directory(commands, tmp_path):
    (tmp_path / "sub").mkdir()
    commands.cd("sub")
    assert commands.execute(Command("mkdir", "new dir")) == Reply.text(MSG_MKDIR_DONE)
    assert (tmp_path / "sub" / "new dir").is_dir()
    assert commands.execute(Command("mkdir", "new dir")) == Reply.error(MSG_MKDIR_FAILED)
    assert commands.execute(Command("mkdir", "no/such/parent")) == Reply.error(MSG_MKDIR_FAILED)
    assert commands.execute(Command("mkdir")) == Reply.error(MSG_MKDIR_FAILED)

def test_delete_file_and_empty_directory(commands, tmp_path):
    (tmp_path / "old.txt").write_text("x")
    (tmp_path / "empty").mkdir()
    full = tmp_path / "full"
    full.mkdir()
    (full / "keep").write_text("x")

    reply = commands.execute(Command("delete", "old.txt"))
    assert reply == Reply.text("File 'old.txt' deleted successfully.\n")
    assert not (tmp_path / "old.txt").exists()
    assert commands.execute(Command("delete", "empty")).status.ok
    assert commands.execute(Command("delete", "full")) == Reply.error(MSG_DELETE_FAILED)
    assert commands.execute(Command("delete", "old.txt")) == Reply.error(MSG_DELETE_FAILED)

def test_unknown_verb(commands):
    assert commands.execute(Command("frobnicate")) == Reply.error(MSG_UNKNOWN_COMMAND)

def test_open_for_get(commands, tmp_path):
    (tmp_path / "data.bin").write_bytes(b"\x00" * 10)
    (tmp_path / "dir").mkdir()
    opened = commands.open_for_get("data.bin")
    assert opened is not None
    f, size = opened
    with f:
        assert size == 10
        assert f.read() == b"\x00" * 10
    assert commands.open_for_get("missing.bin") is None
    assert commands.open_for_get("dir") is None
    assert commands.open_for_get(None) is None

def test_open_for_put(commands, tmp_path):
    f = commands.open_for_put("upload.bin")
    assert f is not None
    with f:
        f.write(b"abc")
    assert (tmp_path / "upload.bin").read_bytes() == b"abc"
    assert commands.open_for_put("no/such/dir/file") is None
    assert commands.open_for_put("") is None
