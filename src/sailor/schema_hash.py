"""Version keys for stored schema documents."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def schema_hash(document: Any) -> str:
    """Return the ``sha256:`` version key of a schema document.

    Strings are hashed as already-serialized JSON so a stored column value and the
    document it was dumped from share one key.
    """
    if isinstance(document, str):
        data = document.encode("utf-8")
    else:
        data = canonical_dumps(document).encode("utf-8")
    return f"sha256:{hashlib.sha256(data).hexdigest()}"
