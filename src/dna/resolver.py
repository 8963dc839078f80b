"""
Conflict Resolver

Folds an imported vault into the local one.

Collections are keyed as follows:
- workflows by id
- command templates by id
- integrations by (type, name)
- context memory by session_id, unioned and never subject to a mode

The local consent and created_at always survive an import.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from loguru import logger

from ..core.error_codes import ConflictUnresolvedError
from .models import CommandTemplate, Integration, Pattern, Vault

T = TypeVar("T")

IMPORTED_NAME_SUFFIX = " (imported)"


class ConflictMode(str, Enum):
    """How to treat an incoming entry whose key already exists locally."""

    MERGE = "merge"
    REPLACE = "replace"
    RENAME = "rename"
    SKIP = "skip"


@dataclass
class ImportSummary:
    added: int = 0
    merged: int = 0
    replaced: int = 0
    renamed: int = 0
    skipped: int = 0
    context_memory_added: int = 0

    @property
    def changed(self) -> bool:
        return any((self.added, self.merged, self.replaced, self.renamed, self.context_memory_added))

    def to_dict(self) -> Dict[str, int]:
        return {
            "added": self.added,
            "merged": self.merged,
            "replaced": self.replaced,
            "renamed": self.renamed,
            "skipped": self.skipped,
            "context_memory_added": self.context_memory_added,
        }


def merge_patterns(existing: Pattern, incoming: Pattern) -> Pattern:
    """Combine two versions of the same pattern."""
    return incoming.model_copy(update={
        "usage_count": existing.usage_count + incoming.usage_count,
        "confidence": max(existing.confidence, incoming.confidence),
        "success_rate": max(existing.success_rate, incoming.success_rate),
        "tags": existing.tags | incoming.tags,
        "created_at": min(existing.created_at, incoming.created_at),
        "last_evolved_at": max(existing.last_evolved_at, incoming.last_evolved_at),
        "impact": incoming.impact.model_copy(update={
            "time_saved_minutes": existing.impact.time_saved_minutes + incoming.impact.time_saved_minutes,
        }),
    })


def merge_templates(existing: CommandTemplate, incoming: CommandTemplate) -> CommandTemplate:
    return incoming.model_copy(update={"usage_count": existing.usage_count + incoming.usage_count})


def merge_integrations(existing: Integration, incoming: Integration) -> Integration:
    return existing.model_copy(update={
        "enabled": existing.enabled or incoming.enabled,
        "endpoint": incoming.endpoint if incoming.endpoint is not None else existing.endpoint,
    })


def _next_free(base: str, taken: Set[str]) -> str:
    n = 2
    while f"{base}_{n}" in taken:
        n += 1
    return f"{base}_{n}"


def _rename_pattern(pattern: Pattern, taken: Set[str]) -> Pattern:
    return pattern.model_copy(update={
        "id": _next_free(pattern.id, taken),
        "name": pattern.name + IMPORTED_NAME_SUFFIX,
    })


def _rename_template(template: CommandTemplate, taken: Set[str]) -> CommandTemplate:
    return template.model_copy(update={"id": _next_free(template.id, taken)})


class ConflictResolver:
    """
    Applies one ConflictMode across every keyed collection of an import.

    Usage:
        resolver = ConflictResolver()
        merged, summary = resolver.merge(local_vault, payload.vault, ConflictMode.SKIP)
    """

    def find_collisions(self, existing: Vault, incoming: Vault) -> List[str]:
        """Keys present on both sides, as readable labels."""
        collisions = []
        local_ids = {p.id for p in existing.workflows}
        collisions += [f"workflow:{p.id}" for p in incoming.workflows if p.id in local_ids]
        local_ids = {t.id for t in existing.command_templates}
        collisions += [f"template:{t.id}" for t in incoming.command_templates if t.id in local_ids]
        local_keys = {i.key for i in existing.integrations}
        collisions += [
            f"integration:{i.type}/{i.name}" for i in incoming.integrations if i.key in local_keys
        ]
        return collisions

    def merge(
        self, existing: Vault, incoming: Vault, mode: Optional[ConflictMode]
    ) -> Tuple[Vault, ImportSummary]:
        if mode is None:
            collisions = self.find_collisions(existing, incoming)
            if collisions:
                raise ConflictUnresolvedError(collisions)
        else:
            mode = ConflictMode(mode)

        summary = ImportSummary()

        workflows = self._resolve(
            existing.workflows, incoming.workflows, mode, summary,
            key=lambda p: p.id,
            combine=merge_patterns,
            rename=_rename_pattern,
        )
        templates = self._resolve(
            existing.command_templates, incoming.command_templates, mode, summary,
            key=lambda t: t.id,
            combine=merge_templates,
            rename=_rename_template,
        )
        integrations = self._resolve_integrations(
            existing.integrations, incoming.integrations, mode, summary
        )

        context_memory = list(existing.context_memory)
        known_sessions = {c.session_id for c in context_memory}
        for entry in incoming.context_memory:
            if entry.session_id not in known_sessions:
                context_memory.append(entry)
                known_sessions.add(entry.session_id)
                summary.context_memory_added += 1

        preferences = dict(existing.preferences)
        for key, value in incoming.preferences.items():
            if key not in preferences or mode in (ConflictMode.MERGE, ConflictMode.REPLACE):
                preferences[key] = value

        result = existing.model_copy(update={
            "workflows": workflows,
            "command_templates": templates,
            "integrations": integrations,
            "context_memory": context_memory,
            "preferences": preferences,
        })
        # Re-run collection validators on the combined result
        result = Vault.model_validate(result.model_dump())

        logger.info("Import resolved", mode=mode.value if mode else None, **summary.to_dict())
        return result, summary

    @staticmethod
    def _resolve(
        existing: Iterable[T],
        incoming: Iterable[T],
        mode: Optional[ConflictMode],
        summary: ImportSummary,
        key: Callable[[T], str],
        combine: Callable[[T, T], T],
        rename: Callable[[T, Set[str]], T],
    ) -> List[T]:
        items: List[T] = list(existing)
        position = {key(item): i for i, item in enumerate(items)}

        for item in incoming:
            k = key(item)
            if k not in position:
                position[k] = len(items)
                items.append(item)
                summary.added += 1
            elif mode == ConflictMode.MERGE:
                items[position[k]] = combine(items[position[k]], item)
                summary.merged += 1
            elif mode == ConflictMode.REPLACE:
                items[position[k]] = item
                summary.replaced += 1
            elif mode == ConflictMode.RENAME:
                renamed = rename(item, set(position))
                position[key(renamed)] = len(items)
                items.append(renamed)
                summary.renamed += 1
            else:
                summary.skipped += 1
        return items

    @staticmethod
    def _resolve_integrations(
        existing: List[Integration],
        incoming: List[Integration],
        mode: Optional[ConflictMode],
        summary: ImportSummary,
    ) -> List[Integration]:
        items = list(existing)
        position = {item.key: i for i, item in enumerate(items)}

        for item in incoming:
            if item.key not in position:
                position[item.key] = len(items)
                items.append(item)
                summary.added += 1
            elif mode == ConflictMode.MERGE:
                items[position[item.key]] = merge_integrations(items[position[item.key]], item)
                summary.merged += 1
            elif mode == ConflictMode.REPLACE:
                items[position[item.key]] = item
                summary.replaced += 1
            elif mode == ConflictMode.RENAME:
                taken = {name for (kind, name) in position if kind == item.type}
                renamed = item.model_copy(update={"name": _next_free(item.name, taken)})
                position[renamed.key] = len(items)
                items.append(renamed)
                summary.renamed += 1
            else:
                summary.skipped += 1
        return items
