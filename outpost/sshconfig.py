"""Host aliases from OpenSSH client config files.

Covers the common subset of ``ssh_config(5)``: ``Host`` blocks with one or
more patterns, ``Include`` with globs (resolved recursively, relative
paths against the top-level config's directory, ``~/.ssh`` by default),
quoted tokens and comments.  ``Match`` blocks are skipped.  Connection parameters themselves are resolved by asyncssh;
this module only answers "which hosts does the user know about".
"""

from __future__ import annotations

import glob
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("~/.ssh/config")

_GLOB_RE = re.compile(r"[*?]|\[[^\]]+\]")


@dataclass
class HostEntry:
    patterns: list[str]
    params: dict[str, str] = field(default_factory=dict)  # lowercased keys, first value wins
    source: Path | None = None
    line: int = 0

    def get(self, key: str) -> str | None:
        return self.params.get(key.lower())


def is_pattern(alias: str) -> bool:
    return alias.startswith("!") or bool(_GLOB_RE.search(alias))


def tokenize(line: str) -> list[str]:
    """Split on whitespace, honouring single and double quotes; stop at ``#``."""
    tokens: list[str] = []
    current: list[str] = []
    quote: str | None = None
    started = False
    for ch in line:
        if quote:
            if ch == quote:
                quote = None
            else:
                current.append(ch)
            continue
        if ch in ("'", '"'):
            quote = ch
            started = True
        elif ch == "#":
            break
        elif ch.isspace():
            if started:
                tokens.append("".join(current))
                current, started = [], False
        else:
            current.append(ch)
            started = True
    if started:
        tokens.append("".join(current))
    return tokens


def _split_keyword(tokens: list[str]) -> tuple[str, list[str]]:
    # "Key=value" and "Key = value" are both valid
    first = tokens[0]
    if "=" in first:
        key, _, rest = first.partition("=")
        args = ([rest] if rest else []) + tokens[1:]
    else:
        key, args = first, tokens[1:]
    if args and args[0] == "=":
        args = args[1:]
    elif args and args[0].startswith("="):
        args = [args[0][1:]] + args[1:]
    return key.lower(), [a for a in args if a]


def _include_paths(pattern: str, ssh_dir: Path) -> list[Path]:
    expanded = Path(os.path.expanduser(pattern))
    if not expanded.is_absolute():
        expanded = ssh_dir / expanded
    return [Path(p) for p in sorted(glob.glob(str(expanded))) if Path(p).is_file()]


def _parse(path: Path, ssh_dir: Path, seen: set[Path], entries: list[HostEntry]) -> None:
    try:
        resolved = path.resolve()
    except OSError:
        resolved = path
    if resolved in seen:
        logger.debug("ssh config %s already parsed, skipping", path)
        return
    seen.add(resolved)

    try:
        text = path.read_text(errors="replace")
    except OSError as exc:
        logger.warning("Cannot read ssh config %s: %s", path, exc)
        return

    current: HostEntry | None = None
    in_match = False
    for line_no, raw in enumerate(text.splitlines(), start=1):
        tokens = tokenize(raw.strip())
        if not tokens:
            continue
        key, args = _split_keyword(tokens)

        if key == "include":
            for pattern in args:
                for included in _include_paths(pattern, ssh_dir):
                    _parse(included, ssh_dir, seen, entries)
        elif key == "host":
            in_match = False
            current = HostEntry(patterns=args, source=path, line=line_no) if args else None
            if current is not None:
                entries.append(current)
        elif key == "match":
            in_match = True
            current = None
        elif current is not None and not in_match and args:
            current.params.setdefault(key, " ".join(args))


def load_entries(path: Path | str | None = None) -> list[HostEntry]:
    """Parse *path* (default ``~/.ssh/config``) and everything it includes."""
    config = Path(os.path.expanduser(str(path or DEFAULT_CONFIG)))
    entries: list[HostEntry] = []
    if not config.is_file():
        logger.debug("No ssh config at %s", config)
        return entries
    _parse(config, config.parent, set(), entries)
    return entries


def load_aliases(path: Path | str | None = None) -> list[str]:
    """Sorted, unique, concrete host aliases; wildcards and negations excluded."""
    aliases = {
        pattern
        for entry in load_entries(path)
        for pattern in entry.patterns
        if not is_pattern(pattern)
    }
    return sorted(aliases)
