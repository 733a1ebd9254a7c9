# paths.py
# Path-filter gate: decides whether a run triggers for a set of changed files.
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern, Sequence

from .errors import ConfigurationError


def _malformed(pattern: str, why: str) -> ConfigurationError:
    return ConfigurationError(
        message=f"Malformed glob {pattern!r}: {why}",
        details={"pattern": pattern},
    )


def _translate(pattern: str) -> str:
    """
    Translate a path glob into a regex.

      **      any number of path segments (including none)
      *       anything except '/'
      ?       one character except '/'
      [abc]   character class, [!abc] negated; never matches '/'
      \\x      literal x
    """
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                while i < n and pattern[i] == "*":
                    i += 1
                if i < n and pattern[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise _malformed(pattern, "unterminated character class")
            body = pattern[i + 1:j]
            negate = body[:1] in ("!", "^")
            if negate:
                body = body[1:]
            escaped = "".join(ch if ch == "-" else re.escape(ch) for ch in body)
            out.append(f"(?!/)[{'^' if negate else ''}{escaped}]")
            i = j + 1
        elif c == "\\":
            if i + 1 >= n:
                raise _malformed(pattern, "dangling escape")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> Pattern[str]:
    if not isinstance(pattern, str) or not pattern.strip():
        raise _malformed(str(pattern), "empty pattern")
    try:
        return re.compile(_translate(pattern), re.DOTALL)
    except re.error as e:
        raise _malformed(pattern, str(e)) from e


def validate_globs(patterns: Optional[Iterable[str]]) -> None:
    """Compile every pattern up front so bad globs fail at load time."""
    for p in patterns or ():
        compile_glob(p)


def glob_match(path: str, pattern: str) -> bool:
    return compile_glob(pattern).fullmatch(path.lstrip("/")) is not None


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(glob_match(path, p) for p in patterns)


def matches(
    changed_files: Iterable[str],
    include_globs: Optional[Sequence[str]] = None,
    exclude_globs: Optional[Sequence[str]] = None,
) -> bool:
    """
    Should a run trigger for these changed files?

    - no changed files (manual dispatch, schedule) -> trigger
    - every changed file is ignorable (matches an exclude glob) -> suppressed,
      even if include globs also match
    - include globs given -> at least one changed file must match one
    """
    include = list(include_globs or [])
    exclude = list(exclude_globs or [])
    validate_globs(include)
    validate_globs(exclude)

    files = sorted(set(changed_files or ()))
    if not files:
        return True

    if exclude and all(matches_any(f, exclude) for f in files):
        return False

    if include:
        return any(matches_any(f, include) for f in files)

    return True
