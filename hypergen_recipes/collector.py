"""Accumulator for AI directives found while rendering templates in collect mode."""

import logging
import threading
from dataclasses import dataclass
from dataclasses import field

from .errors import DuplicateAiKeyError

logger = logging.getLogger(__name__)


@dataclass
class AiBlockEntry:
    """One AI block collected during a render pass."""

    key: str
    contexts: list[str] = field(default_factory=list)
    prompt: str = ""
    output_description: str = ""
    examples: list[str] = field(default_factory=list)
    source_file: str = "<unknown>"


class AiCollector:
    """Collects AI blocks and global context for one pass.

    Instances are owned by the caller and passed through the render context.
    All mutation happens under a lock, so templates rendered concurrently by
    parallel steps can share one collector safely.
    """

    def __init__(self, collect_mode: bool = False):
        self.collect_mode = collect_mode
        self._lock = threading.Lock()
        self._entries: dict[str, AiBlockEntry] = {}
        self._global_contexts: list[str] = []

    def add_global_context(self, text: str) -> None:
        """Append template-wide context; blank text is ignored."""
        if not text or not text.strip():
            return
        with self._lock:
            self._global_contexts.append(text.strip())

    def add_entry(
        self,
        key: str,
        contexts: list[str] | None = None,
        prompt: str = "",
        output_description: str = "",
        source_file: str = "<unknown>",
        examples: list[str] | None = None,
    ) -> AiBlockEntry:
        """
        Register an AI block.

        Raises:
            DuplicateAiKeyError: If ``key`` was already collected in this pass
        """
        entry = AiBlockEntry(
            key=key,
            contexts=list(contexts or []),
            prompt=prompt,
            output_description=output_description,
            examples=list(examples or []),
            source_file=source_file,
        )
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                raise DuplicateAiKeyError(key, existing.source_file, source_file)
            self._entries[key] = entry
        logger.debug(f"Collected AI block '{key}' from {source_file}")
        return entry

    def has_entries(self) -> bool:
        with self._lock:
            return bool(self._entries)

    def get_entries(self) -> dict[str, AiBlockEntry]:
        """Return a snapshot of entries in collection order."""
        with self._lock:
            return dict(self._entries)

    def get_global_contexts(self) -> list[str]:
        with self._lock:
            return list(self._global_contexts)

    def clear(self) -> None:
        """Drop all collected state; call between passes and between recipes."""
        with self._lock:
            self._entries.clear()
            self._global_contexts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
