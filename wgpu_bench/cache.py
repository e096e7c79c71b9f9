"""Pipeline cache and the map variants behind it.

CountingMap counts hits and misses on get(); NonCachingMap stores nothing
and is swapped in when caching is disabled, so every primitive recompiles.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Optional

import wgpu

logger = logging.getLogger(__name__)


# ============================================================================
# Map variants
# ============================================================================

class CountingMap:
    """Dict-backed map whose get() counts hits and misses."""

    def __init__(self, items=None, enabled=True):
        self._map = dict(items or {})
        self._hits = 0
        self._misses = 0
        self._enabled = enabled

    def get(self, key):
        if not self._enabled:
            return None
        if key in self._map:
            self._hits += 1
            return self._map[key]
        self._misses += 1
        return None

    def peek(self, key):
        """get() without touching the hit/miss counters."""
        return self._map.get(key) if self._enabled else None

    def set(self, key, value):
        if self._enabled:
            self._map[key] = value

    def has(self, key):
        return self._enabled and key in self._map

    def delete(self, key):
        return self._map.pop(key, None) is not None

    def clear(self):
        self._map.clear()
        self._hits = 0
        self._misses = 0

    def enable(self):
        self._enabled = True

    def disable(self):
        self._enabled = False

    @property
    def enabled(self):
        return self._enabled

    @property
    def size(self):
        return len(self._map)

    @property
    def hits(self):
        return self._hits

    @property
    def misses(self):
        return self._misses

    def keys(self):
        return self._map.keys()

    def values(self):
        return self._map.values()

    def items(self):
        return self._map.items()

    def __contains__(self, key):
        return self.has(key)

    def __len__(self):
        return self.size

    def __iter__(self):
        return iter(self._map)


class NonCachingMap:
    """Same interface as CountingMap; never stores anything."""

    enabled = False

    def get(self, key):
        return None

    def peek(self, key):
        return None

    def set(self, key, value):
        pass

    def has(self, key):
        return False

    def delete(self, key):
        return False

    def clear(self):
        pass

    @property
    def size(self):
        return 0

    @property
    def hits(self):
        return 0

    @property
    def misses(self):
        return 0

    def keys(self):
        return iter(())

    def values(self):
        return iter(())

    def items(self):
        return iter(())

    def __contains__(self, key):
        return False

    def __len__(self):
        return 0

    def __iter__(self):
        return iter(())


# ============================================================================
# Pipeline cache
# ============================================================================

BUFFER_TYPES = ("read-only-storage", "storage", "uniform")


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int


@dataclass
class PipelineEntry:
    pipeline: Any
    bind_group_layout: Any


def fingerprint(shader_text, layout_signature, entry_point="main"):
    """Stable key for (shader text, bind-group layout signature, entry point)."""
    h = hashlib.sha256()
    h.update(shader_text.encode("utf-8"))
    h.update(b"\0")
    h.update(",".join(layout_signature).encode("utf-8"))
    h.update(b"\0")
    h.update(entry_point.encode("utf-8"))
    return h.hexdigest()


def _bind_group_layout_entries(layout_signature):
    entries = []
    for i, buffer_type in enumerate(layout_signature):
        if buffer_type not in BUFFER_TYPES:
            raise ValueError(f"Unknown buffer type '{buffer_type}' at binding {i}")
        entries.append({
            "binding": i,
            "visibility": wgpu.ShaderStage.COMPUTE,
            "buffer": {
                "type": buffer_type,
                "has_dynamic_offset": False,
            },
        })
    return entries


class PipelineCache:
    """Process-wide memo of compiled compute pipelines.

    Insertion is first-writer-wins and nothing is evicted. disable() swaps
    the backing map for a NonCachingMap; enable() swaps the counting map
    back with its previous contents.
    """

    def __init__(self, enabled=True):
        self._counting = CountingMap()
        self._map = self._counting if enabled else NonCachingMap()

    @property
    def enabled(self):
        return self._map is self._counting

    def enable(self):
        self._map = self._counting

    def disable(self):
        self._map = NonCachingMap()

    def clear(self):
        self._counting.clear()

    def stats(self):
        return CacheStats(hits=self._map.hits, misses=self._map.misses, size=self._map.size)

    def lookup(self, shader_text, layout_signature, entry_point="main") -> Optional[PipelineEntry]:
        return self._map.get(fingerprint(shader_text, layout_signature, entry_point))

    def insert(self, shader_text, layout_signature, entry, entry_point="main"):
        """Insert unless present; returns the entry that ends up cached."""
        key = fingerprint(shader_text, layout_signature, entry_point)
        if self._map.has(key):
            return self._map.peek(key)
        self._map.set(key, entry)
        return entry

    def get_or_create(self, device, shader_text, layout_signature,
                      entry_point="main", label=""):
        """Return a cached pipeline or compile one with an explicit layout.

        Args:
            device: wgpu device
            shader_text: complete WGSL source
            layout_signature: buffer type per binding, in binding order
            entry_point: compute entry point name
            label: debug label for the created objects
        """
        layout_signature = tuple(layout_signature)
        entry = self.lookup(shader_text, layout_signature, entry_point)
        if entry is not None:
            return entry

        logger.debug(f"Compiling pipeline '{label}' entry point '{entry_point}'")
        shader_module = device.create_shader_module(label=label, code=shader_text)
        bind_group_layout = device.create_bind_group_layout(
            label=label, entries=_bind_group_layout_entries(layout_signature)
        )
        pipeline_layout = device.create_pipeline_layout(
            label=label, bind_group_layouts=[bind_group_layout]
        )
        pipeline = device.create_compute_pipeline(
            label=label,
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": entry_point},
        )
        return self.insert(
            shader_text, layout_signature,
            PipelineEntry(pipeline=pipeline, bind_group_layout=bind_group_layout),
            entry_point,
        )
