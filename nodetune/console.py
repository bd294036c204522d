"""Console output for nodetune.

Every component reports through these helpers rather than a logging
framework: one indented line per event, a Nerd Font icon and a colour.
"""

import sys

# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    BUG      = "\uf188"   # bug (debug)
    PACKAGE  = "\uf187"   # archive
    COGS     = "\uf085"   # cogs
    WRENCH   = "\uf0ad"   # wrench
    GLOBE    = "\uf0ac"   # globe
    CLOCK    = "\uf017"   # clock
    LINUX    = "\uf17c"   # tux
    SHIELD   = "\uf132"   # shield
    KEY      = "\uf084"   # key
    FILE     = "\uf15c"   # file-text
    SERVER   = "\uf233"   # server
    SYNC     = "\uf021"   # refresh
    TRASH    = "\uf1f8"   # trash
    LOCK     = "\uf023"   # lock


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


class _Mode:
    quiet = False
    verbose = False


def configure(quiet: bool = False, verbose: bool = False) -> None:
    """Set process-wide verbosity.

    quiet suppresses per-command and per-file chatter; warnings, errors and
    banners still print.  verbose enables debug traces.
    """
    _Mode.quiet = quiet
    _Mode.verbose = verbose


def is_quiet() -> bool:
    return _Mode.quiet


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}  {icon}  {title}  {tag}{_C.RESET}")


def _info(msg: str) -> None:
    if _Mode.quiet:
        return
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    if _Mode.quiet:
        return
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


def _debug(msg: str) -> None:
    if not _Mode.verbose:
        return
    print(f"  {_C.DIM}{_I.BUG}  {msg}{_C.RESET}")
