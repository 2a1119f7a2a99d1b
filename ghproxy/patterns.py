"""Upstream URL shape recognition.

Each supported upstream is described by an anchored regular expression
whose capture groups carry the identity used for access control (owner
first, then repository or name). Shapes are tried in order and the
first match wins, so more specific GitHub shapes come before the
generic hosts.

The scheme is optional for matching purposes; ``ensure_scheme`` adds the
forced scheme to anything that is fetched or handed back to a client.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple

SCHEME_RE = re.compile(r"^https?://")
DEFAULT_SCHEME = "https"


@dataclass(frozen=True)
class UpstreamPattern:
    """A recognised upstream URL shape."""

    name: str
    regex: re.Pattern
    blob_style: bool = False

    def match(self, candidate: str) -> Optional[Tuple[str, ...]]:
        """Return identity captures if *candidate* has this shape."""
        m = self.regex.match(candidate)
        if m is None:
            return None
        return tuple(group or "" for group in m.groups())


def _shape(name: str, pattern: str, blob_style: bool = False) -> UpstreamPattern:
    return UpstreamPattern(name=name, regex=re.compile(r"^(?:https?://)?" + pattern), blob_style=blob_style)


UPSTREAM_PATTERNS: Tuple[UpstreamPattern, ...] = (
    _shape("github-release", r"github\.com/([^/]+)/([^/]+)/(?:releases|archive)/.*$"),
    _shape("github-blob", r"github\.com/([^/]+)/([^/]+)/(?:blob|raw)/.*$", blob_style=True),
    _shape("github-git", r"github\.com/([^/]+)/([^/]+)/(?:info|git-).*$"),
    _shape("github-raw", r"raw\.github(?:usercontent|)\.com/([^/]+)/([^/]+)/.+?/.+$"),
    _shape("github-gist", r"gist\.github(?:usercontent|)\.com/([^/]+)/.+?/.+"),
    _shape("github-api", r"api\.github\.com/repos/([^/]+)/([^/]+)/.*"),
    _shape("huggingface", r"huggingface\.co(?:/spaces)?/([^/]+)/(.+)$"),
    _shape("huggingface-lfs", r"cdn-lfs\.hf\.co(?:/spaces)?/([^/]+)/([^/]+)(?:/(.*))?$"),
    _shape("docker-download", r"download\.docker\.com/([^/]+)/.*\.(tgz|zip)$"),
)

# Locates the blob/raw segment of a github-blob URL.
_BLOB_SEGMENT_RE = re.compile(r"^((?:https?://)?github\.com/[^/]+/[^/]+/)blob(/)")


def has_scheme(candidate: str) -> bool:
    return SCHEME_RE.match(candidate) is not None


def ensure_scheme(url: str, default: str = DEFAULT_SCHEME) -> str:
    """Prefix *url* with ``default://`` unless it already has a scheme."""
    if has_scheme(url):
        return url
    return f"{default}://{url.lstrip('/')}"


def classify(candidate: str) -> Optional[Tuple[UpstreamPattern, Tuple[str, ...]]]:
    """Return the first matching pattern and its captures, or None."""
    for pattern in UPSTREAM_PATTERNS:
        captures = pattern.match(candidate)
        if captures is not None:
            return pattern, captures
    return None


def match(candidate: str) -> Optional[Tuple[str, ...]]:
    """Return the identity captures of the first matching shape, or None."""
    result = classify(candidate)
    if result is None:
        return None
    return result[1]


def is_blob_style(candidate: str) -> bool:
    result = classify(candidate)
    return result is not None and result[0].blob_style


def rewrite_blob_to_raw(candidate: str) -> str:
    """Turn a GitHub blob viewer URL into its raw-content equivalent.

    Only the path segment directly after ``<owner>/<repo>`` is touched,
    so already-raw URLs and files that merely contain ``/blob/`` further
    down the path come back unchanged.
    """
    if not is_blob_style(candidate):
        return candidate
    return _BLOB_SEGMENT_RE.sub(r"\1raw\2", candidate, count=1)
