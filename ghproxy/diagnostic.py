"""Shell snippet rewriter served at ``/perl-pe-para``.

The response is a ``perl -pe`` substitution script. Piping an install
snippet through it rewrites ``bash something.sh`` invocations to apply
the same script recursively, turns bare ``git`` hosts into https URLs,
and prefixes every git/http URL with this proxy's base URL:

    curl -sL https://example.com/install.sh | perl -pe "$(curl -L https://proxy/perl-pe-para)" | bash
"""

from __future__ import annotations

DIAGNOSTIC_TOKEN = "perl-pe-para"
CACHE_CONTROL = "max-age=300"
CONTENT_TYPE = "text/plain; charset=utf-8"

_PERL = "perl -pe"


def render_script(self_url: str, base_url: str) -> str:
    """Render the substitution script.

    Args:
        self_url: URL the caller used to fetch this script.
        base_url: Proxy base URL (scheme, host and routing prefix,
            without a trailing slash) used as the rewrite prefix.
    """
    base_url = base_url.rstrip("/")
    return (
        rf's#(bash.*?\.sh)([^/\w\d])#\1 | {_PERL} "$(curl -L {self_url})" \2#g; '
        r"s# (git)# https://\1#g; "
        rf"s#(http.*?git[^/]*?/)#{base_url}/\1#g"
    )
