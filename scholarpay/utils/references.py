from __future__ import annotations

import secrets
import string
import time
from typing import Callable

_ALPHABET = string.ascii_letters + string.digits


class MerchantReferenceGenerator:
    """Mints ``<prefix>_<unixTimestamp>_<8 random chars>`` references.

    The suffix comes from ``secrets`` (62**8 values per second), so concurrent
    submissions in the same second do not collide in practice.
    """

    def __init__(self, prefix: str = "MALAIKA", clock: Callable[[], float] = time.time, suffix_length: int = 8):
        if not prefix or "_" in prefix:
            raise ValueError("Merchant reference prefix must be non-empty and contain no underscore")
        self.prefix = prefix
        self.suffix_length = suffix_length
        self._clock = clock

    def generate(self) -> str:
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(self.suffix_length))
        return f"{self.prefix}_{int(self._clock())}_{suffix}"
