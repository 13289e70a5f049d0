"""
pwtree - Interactive Command Line

Opens a store file (asking for its password), then reads commands from a
prompt until 'exit' or Ctrl-D. Commands are looked up in the COMMANDS
table; every handler receives the Session and the rest of the line.

Usage:
    pwtree                          # default file ~/.pwtree/default.enc
    pwtree -f ~/work.enc -t 120     # other file, 2 minute input timeout
    python -m pwtree.cli --verbose  # print tracebacks of failed commands

Every wait for user input is bounded by a timeout; when it expires the
program closes the store and exits.
"""

import argparse
import getpass
import logging
import signal
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pyperclip

from . import __version__, crypto
from .errors import DecryptionFailed, VaultError
from .vault import Vault

try:
    import readline
except ImportError:  # not available on Windows
    readline = None

logger = logging.getLogger("pwtree.cli")

DEFAULT_FILE = "~/.pwtree/default.enc"
HISTFILE = "~/.pwtree/hist"
PROMPT = "> "
TIMEOUT = 300           # seconds without input before the program exits
DEFAULT_GEN_LENGTH = 20
DEFAULT_GEN_CHARSETS = "luds"
FORCE_FLAGS = ("-f", "--force")

HELP_TEXT = """
help                  - Prints this help text
set KEY               - Sets the value of the key to a value entered by the user.
gen KEY [LEN] [SETS]  - Sets the value of the key to a random password of LEN
                        characters (default 20) from the character sets SETS:
                        l lower case, u upper case, d digits, s symbols
                        (default luds).
change_passwd         - Changes the password of the current file.
paste KEY             - Sets the value of the key from the system clipboard.
print                 - Prints a representation of the tree, without values.
print KEY             - Prints the value of the key.
copy KEY              - Copies the value of the key, auto clears clipboard afterward.
copy_raw              - Clears the clipboard.
copy_raw KEY          - Copies the value of a key, without clearing the clipboard.
                        Useful for moving values around between keys.
copyc INT KEY         - Copies the (1-indexed) character from the value of the key.
del KEY [-f]          - Deletes the key from the tree. If it has subtrees, the
                        subtrees get deleted if and only if the key had no value.
                        -f (or --force), before or after the key, skips the
                        confirmation.
exit                  - Exit.

Keys are sorted in forward-slash separated tree structure (slightly
reminiscent of urls). E.g. in a tree structure like

some/
  long/
    path *
  other/
    path *

'some/long/path' would be a valid key. Keys marked with * hold a value.

Nodes can also have values, so path 'some/long/path' and 'some/long' can both
have values assigned to them.

Nodes are automatically created and destroyed as needed."""


class CommandError(Exception):
    """A command was used wrongly; the message is shown to the user."""


class InputTimeout(Exception):
    """No user input arrived in time."""


@dataclass
class Session:
    """Everything a command needs: the open vault and the user's options."""

    vault: Vault
    file: str
    timeout: int = TIMEOUT
    verbose: bool = False
    quit: bool = field(default=False, init=False)


# =============================================================================
# INPUT HELPERS
# =============================================================================

@contextmanager
def input_timeout(seconds: int):
    """Raise InputTimeout if the block runs longer than ``seconds``.

    Uses SIGALRM, so it is a no-op where that signal does not exist and
    when seconds is 0.
    """
    if not seconds or not hasattr(signal, "SIGALRM"):
        yield
        return

    def expired(signum, frame):
        raise InputTimeout()

    previous = signal.signal(signal.SIGALRM, expired)
    signal.alarm(seconds)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


def ask(question: str, timeout: int) -> str:
    with input_timeout(timeout):
        return input(question)


def ask_secret(question: str, timeout: int) -> str:
    with input_timeout(timeout):
        return getpass.getpass(question)


def agree(question: str, timeout: int) -> bool:
    return ask(question, timeout).strip().lower() in ("y", "yes")


def read_password(desc: str, timeout: int) -> Optional[str]:
    """
    Ask for a password twice until both entries match.

    Returns:
        The password, or None if the user left it blank to cancel
    """
    while True:
        first = ask_secret(f"Please enter the {desc} (leave blank to cancel): ", timeout)
        if not first:
            return None
        second = ask_secret(f"Re-enter the {desc} to confirm: ", timeout)
        if first == second:
            return first
        print("The passwords did not match. Please try again.")


def _require_key(key: Optional[str]) -> str:
    if not key:
        raise CommandError("Key must be supplied.")
    return key


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_help(session: Session, args: Optional[str]) -> None:
    print(HELP_TEXT)


def cmd_set(session: Session, args: Optional[str]) -> None:
    """Set a value entered twice by the user. A blank value cancels."""
    key = _require_key(args)
    secret = read_password("value", session.timeout)
    if not secret:
        return
    session.vault.set(key, secret)
    session.vault.flush()


def cmd_gen(session: Session, args: Optional[str]) -> None:
    """Store a generated password under a key without showing it."""
    parts = _require_key(args).split()
    key = parts[0]
    try:
        length = int(parts[1]) if len(parts) > 1 else DEFAULT_GEN_LENGTH
    except ValueError:
        raise CommandError(f"Invalid length '{parts[1]}'.")
    charsets = parts[2] if len(parts) > 2 else DEFAULT_GEN_CHARSETS

    session.vault.set(key, crypto.generate_password(length, charsets))
    session.vault.flush()
    print(f"Generated a {length} character password for '{key}'.")


def cmd_change_passwd(session: Session, args: Optional[str]) -> None:
    """Change the file password. Every value is re-encrypted."""
    password = read_password(f"new password for file '{session.file}'", session.timeout)
    if not password:
        return
    session.vault.rotate(password)
    session.vault.flush()
    print("Password changed.")


def cmd_paste(session: Session, args: Optional[str]) -> None:
    key = _require_key(args)
    value = pyperclip.paste()
    if not value:
        raise CommandError("Clipboard empty, could not paste.")
    session.vault.set(key, value)
    session.vault.flush()


def cmd_print(session: Session, args: Optional[str]) -> None:
    """Print the tree skeleton, or show one value until Enter is pressed."""
    if not args:
        print(session.vault.render(), end="")
        return

    value = session.vault.get(args)
    sys.stdout.write(value)
    sys.stdout.flush()
    try:
        ask("", session.timeout)
    finally:
        # Move back up over the value and blank it out.
        hidden = "<hidden>" + " " * max(len(value) - 8, 0)
        sys.stdout.write("\033[F\r" + hidden + "\n")
        sys.stdout.flush()


def cmd_copy(session: Session, args: Optional[str]) -> None:
    key = _require_key(args)
    try:
        pyperclip.copy(session.vault.get(key))
        ask("Value copied. Press enter to wipe...", session.timeout)
    finally:
        pyperclip.copy("")


def cmd_copy_raw(session: Session, args: Optional[str]) -> None:
    """Copy a value without clearing it afterwards; no key clears the clipboard."""
    if args:
        pyperclip.copy(session.vault.get(args))
    else:
        pyperclip.copy("")


def cmd_copyc(session: Session, args: Optional[str]) -> None:
    """Copy a single character (1-indexed) of a value."""
    parts = (args or "").split(None, 1)
    if len(parts) != 2:
        raise CommandError("Usage: copyc INT KEY")
    try:
        pos = int(parts[0])
    except ValueError:
        raise CommandError(f"Invalid position '{parts[0]}'.")

    value = session.vault.get(parts[1])
    if not 1 <= pos <= len(value):
        raise CommandError(f"Position must be between 1 and {len(value)}.")
    try:
        pyperclip.copy(value[pos - 1])
        ask("Character copied. Press enter to wipe...", session.timeout)
    finally:
        pyperclip.copy("")


def cmd_del(session: Session, args: Optional[str]) -> None:
    """
    Delete a key.

    A key with a value loses only its value; a key without one is removed
    together with its subtree. Empty nodes left behind are pruned.
    The force flag may come before or after the key.
    """
    words = (args or "").split(" ")
    force = False
    if words[0] in FORCE_FLAGS:
        force, words = True, words[1:]
    elif words[-1] in FORCE_FLAGS:
        force, words = True, words[:-1]
    key = _require_key(" ".join(words).strip())

    if not force and not agree(f"Are you sure you want to delete the key '{key}'? ", session.timeout):
        return
    session.vault.delete(key)
    session.vault.flush()


def cmd_exit(session: Session, args: Optional[str]) -> None:
    session.quit = True


COMMANDS = {
    "help": cmd_help,
    "set": cmd_set,
    "gen": cmd_gen,
    "change_passwd": cmd_change_passwd,
    "paste": cmd_paste,
    "print": cmd_print,
    "copy": cmd_copy,
    "copy_raw": cmd_copy_raw,
    "copyc": cmd_copyc,
    "del": cmd_del,
    "exit": cmd_exit,
}


def run(session: Session, line: Optional[str]) -> None:
    """
    Run a single command line. Errors are printed, not raised.

    A line of None (Ctrl-D) ends the session.
    """
    if line is None:
        session.quit = True
        return
    line = line.strip()
    if not line:
        return

    parts = line.split(None, 1)
    name = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else None

    handler = COMMANDS.get(name)
    if handler is None:
        print(f"Command '{name}' undefined. Type 'help' for a list of commands.", file=sys.stderr)
        return

    try:
        handler(session, args)
    except InputTimeout:
        raise
    except Exception as e:
        print(e, file=sys.stderr)
        if session.verbose:
            traceback.print_exc()


# =============================================================================
# SESSION
# =============================================================================

def load_vault(path: str, timeout: int) -> Optional[Vault]:
    """
    Open the vault at path, asking for the password until it works.

    A new file gets its password entered twice. A blank password cancels.

    Returns:
        The open vault, or None if the user cancelled
    """
    vault = Vault(path)
    if not vault.path.exists():
        password = read_password(f"new password for file {path}", timeout)
        if not password:
            return None
        vault.open(password)
        return vault

    while True:
        password = ask_secret(f"Password for file {path} (leave blank to cancel): ", timeout)
        if not password:
            return None
        try:
            vault.open(password)
            return vault
        except DecryptionFailed:
            print("Decryption failed. Corrupt file or wrong password.", file=sys.stderr)


def complete_candidates(session: Session, text: str) -> list:
    """Command names and keys holding a value that start with text."""
    names = [name for name in COMMANDS if name.startswith(text)]
    keys = [path for path, value in session.vault.iterate()
            if value is not None and path.startswith(text)]
    return names + keys


def init_readline(session: Session) -> None:
    if readline is None:
        return

    def completer(text, state):
        matches = complete_candidates(session, text)
        return matches[state] if state < len(matches) else None

    readline.set_completer_delims(" \t\n")
    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")

    hist = Path(HISTFILE).expanduser()
    if hist.exists():
        readline.read_history_file(str(hist))


def save_history() -> None:
    if readline is None:
        return
    hist = Path(HISTFILE).expanduser()
    hist.parent.mkdir(parents=True, exist_ok=True)
    readline.write_history_file(str(hist))


def prompt(session: Session) -> None:
    """Read and run commands until the session ends."""
    try:
        while not session.quit:
            try:
                line = ask(PROMPT, session.timeout)
            except EOFError:
                line = None
            run(session, line)
    finally:
        save_history()


def welcome(session: Session) -> None:
    print(f"pwtree version {__version__}")
    print(f"Using password file {session.file}.")
    if session.vault.is_new:
        print("The file does not exist yet; it is created on the first change.")
    print("Welcome to pwtree! Type 'help' for a list of commands.")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pwtree", description="A small and simple password manager.")
    parser.add_argument("-f", "--file", default=DEFAULT_FILE, help="Load from the given file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print exception stacks.")
    parser.add_argument("-t", "--timeout", type=int, default=TIMEOUT,
                        help="Seconds to wait for input before exiting (0 disables)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    vault = None
    try:
        vault = load_vault(args.file, args.timeout)
        if vault is None:
            return 0
        session = Session(vault, args.file, args.timeout, args.verbose)
        welcome(session)
        init_readline(session)
        prompt(session)
    except InputTimeout:
        print("\nUser input timeout. Closing...", file=sys.stderr)
        return 1
    except (VaultError, OSError) as e:
        print(e, file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1
    except KeyboardInterrupt:
        print("\nExiting...")
    finally:
        if vault is not None:
            vault.close()
            logger.debug("Session ended")
    return 0


if __name__ == "__main__":
    sys.exit(main())
