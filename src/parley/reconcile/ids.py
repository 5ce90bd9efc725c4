"""Cross-format tool-call identifier reconciliation.

The three providers use different tool-call id schemes (``call_…``,
``toolu_…``, ``gemini_…``).  When a conversation crosses formats, an id
issued by one provider has to be re-expressed for another, and the
mapping has to be stable: every sibling id resolves to the same entry.
"""

from __future__ import annotations

import logging
import random
import re
import string
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from parley.types import ProviderFormat

_logger = logging.getLogger(__name__)

ID_PREFIXES: dict[ProviderFormat, str] = {
    ProviderFormat.OPENAI: "call_",
    ProviderFormat.CLAUDE: "toolu_",
    ProviderFormat.GEMINI: "gemini_",
}

_PREFIX_RE = re.compile(r"^(call_|toolu_|gemini_)")
_ALPHABET = string.ascii_lowercase + string.digits


def canonicalize(tool_id: str) -> str:
    """Strip a known provider prefix from *tool_id*."""
    return _PREFIX_RE.sub("", tool_id or "")


def detect_format(tool_id: str) -> ProviderFormat | None:
    for fmt, prefix in ID_PREFIXES.items():
        if tool_id.startswith(prefix):
            return fmt
    return None


@dataclass
class IdMapping:
    canonical: str
    openai: str
    claude: str
    gemini: str
    aliases: list[str] = field(default_factory=list)

    def for_format(self, fmt: ProviderFormat) -> str:
        return getattr(self, fmt.value)

    def siblings(self) -> tuple[str, str, str]:
        return self.openai, self.claude, self.gemini

    def all_ids(self) -> list[str]:
        return [*self.siblings(), *self.aliases]


class IdReconciler:
    """Bounded, LRU-evicted mapping between provider tool-call ids.

    Parameters
    ----------
    max_mappings:
        Capacity; exceeding it evicts the least recently touched entries.
    evict_ratio:
        Fraction of the capacity removed per eviction pass.
    clock:
        Millisecond-resolution time source for minted ids.
    """

    def __init__(
        self,
        max_mappings: int = 1000,
        evict_ratio: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max = max_mappings
        self._evict_count = max(1, int(max_mappings * evict_ratio))
        self._clock = clock
        self._entries: OrderedDict[str, IdMapping] = OrderedDict()  # LRU order
        self._reverse: dict[str, str] = {}  # any sibling id -> canonical
        self._counter = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def mint(self, fmt: ProviderFormat | str) -> str:
        """Fresh, never-empty id for *fmt*."""
        fmt = ProviderFormat.parse(fmt)
        self._counter += 1
        suffix = "".join(random.choices(_ALPHABET, k=6))
        stamp = int(self._clock() * 1000)
        return f"{ID_PREFIXES[fmt]}{stamp}_{self._counter}_{suffix}"

    def get_or_create_mapped_id(
        self,
        original_id: str | None,
        target: ProviderFormat | str = ProviderFormat.OPENAI,
    ) -> str:
        """Return *original_id* expressed in the *target* format."""
        target = ProviderFormat.parse(target)
        if not original_id:
            return self.mint(target)

        canonical = self._reverse.get(original_id)
        if canonical is None:
            entry = self._create(original_id)
            canonical = entry.canonical
            self._touch(canonical)
            self._evict_if_needed()
        else:
            entry = self._entries[canonical]
            self._touch(canonical)
        return entry.for_format(target)

    def resolve(self, any_id: str) -> IdMapping | None:
        """Entry for any sibling id, without touching it."""
        canonical = self._reverse.get(any_id)
        if canonical is None:
            return None
        return self._entries.get(canonical)

    def clear(self) -> None:
        """Reset every table and the mint counter."""
        self._entries.clear()
        self._reverse.clear()
        self._counter = 0
        _logger.info("Tool-call id mappings cleared")

    @property
    def size(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create(self, original_id: str) -> IdMapping:
        canonical = canonicalize(original_id)
        existing = self._entries.get(canonical)
        if existing is not None:
            # Same canonical id under another prefix: alias it to the entry.
            existing.aliases.append(original_id)
            self._reverse[original_id] = canonical
            return existing
        # unprefixed ids are kept as the OpenAI sibling
        own = detect_format(original_id) or ProviderFormat.OPENAI
        ids = {
            fmt: (original_id if fmt is own else self.mint(fmt))
            for fmt in ProviderFormat
        }
        entry = IdMapping(
            canonical=canonical,
            openai=ids[ProviderFormat.OPENAI],
            claude=ids[ProviderFormat.CLAUDE],
            gemini=ids[ProviderFormat.GEMINI],
        )
        self._entries[canonical] = entry
        for sibling in entry.siblings():
            self._reverse[sibling] = canonical
        return entry

    def _touch(self, canonical: str) -> None:
        self._entries.move_to_end(canonical)

    def _evict_if_needed(self) -> None:
        if len(self._entries) <= self._max:
            return
        for _ in range(min(self._evict_count, len(self._entries))):
            canonical, entry = self._entries.popitem(last=False)
            for sibling in entry.all_ids():
                if self._reverse.get(sibling) == canonical:
                    del self._reverse[sibling]
        _logger.debug("Evicted %d id mappings (%d left)", self._evict_count, len(self._entries))
