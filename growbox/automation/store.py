"""Rule store: validated CRUD with JSON-file persistence.

Architecture
------------
- Every write validates the full rule document; invalid rules raise
  ``RuleValidationError`` and never reach the evaluator.
- Writes replace whole rule objects (copy-on-write) under an
  ``asyncio.Lock``; readers get deep copies, so a tick's rule list can never
  observe a half-applied edit.
- ``last_triggered`` and ``trigger_count`` are engine-owned: updates keep
  the stored values, and only ``record_triggers`` advances them.
- ``depends_on`` and ``conflicts_with`` must name existing rules when a rule
  is written. Rules loaded from disk are not cross-checked; a missing
  dependency simply stays unmet.
- Rules persist to a JSON file, written atomically through a temp file.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import time
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from loguru import logger

from growbox.automation.models import Rule, RuleValidationError, validate_rule


class RuleNotFoundError(KeyError):
    """No rule with the given id."""


class RuleStore:
    """Durable collection of automation rules.

    Parameters
    ----------
    path:
        JSON file for persistence. Empty keeps rules in memory only.
    known_devices:
        Optional allow-list of actuator ids that actions may target.
    """

    def __init__(self, path: str | Path = "", known_devices: set[str] | None = None):
        self._path = Path(path) if path else None
        self._known_devices = set(known_devices or ())
        self._rules: dict[str, Rule] = {}  # rule_id → rule
        self._lock = asyncio.Lock()

    # -- persistence ---------------------------------------------------------

    def load(self) -> None:
        """Load rules from disk. Missing file → empty rule set."""
        if self._path is None or not self._path.exists():
            logger.debug("[RuleStore] no file at {}, starting with no rules", self._path)
            return

        try:
            text = self._path.read_text(encoding="utf-8").strip()
            if not text:
                logger.debug("[RuleStore] empty file at {}, starting fresh", self._path)
                return
            data = json.loads(text)
        except (json.JSONDecodeError, OSError) as exc:
            logger.error("[RuleStore] failed to load {}: {}", self._path, exc)
            return

        for d in data.get("rules", []):
            try:
                rule = Rule.from_dict(d)
                errors = validate_rule(rule, self._known_devices)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("[RuleStore] skipping malformed rule: {}", exc)
                continue
            if errors or not rule.id:
                logger.warning(
                    "[RuleStore] skipping invalid rule '{}': {}", rule.id, "; ".join(errors),
                )
                continue
            self._rules[rule.id] = rule
        logger.info("[RuleStore] loaded {} rules from {}", len(self._rules), self._path)

    async def _save(self) -> None:
        """Persist rules to disk. Call with the lock held."""
        if self._path is None:
            return
        data = {
            "version": 1,
            "updated_at": time.time(),
            "rules": [r.to_dict() for r in self._rules.values()],
        }
        tmp = self._path.with_suffix(".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(str(tmp), str(self._path))
        except OSError as exc:
            logger.error("[RuleStore] failed to save: {}", exc)

    # -- CRUD ----------------------------------------------------------------

    def _check(self, rule: Rule) -> None:
        errors = validate_rule(rule, self._known_devices)
        if errors:
            raise RuleValidationError(errors)

    def _check_refs(self, rule: Rule) -> None:
        """Referenced rules must exist at write time. Call with the lock held."""
        missing = sorted({r for r in (*rule.depends_on, *rule.conflicts_with) if r not in self._rules})
        if missing:
            raise RuleValidationError([f"Referenced rule(s) do not exist: {missing}"])

    async def create(self, rule: Rule) -> Rule:
        """Validate and add a rule, assigning an id when it has none.

        Raises ``RuleValidationError`` for invalid rules and ``ValueError``
        if a rule with the same id already exists.
        """
        self._check(rule)
        async with self._lock:
            rule_id = rule.id or uuid.uuid4().hex[:12]
            if rule_id in self._rules:
                raise ValueError(f"Rule '{rule_id}' already exists")
            self._check_refs(rule)
            stored = replace(copy.deepcopy(rule), id=rule_id, last_triggered=None, trigger_count=0)
            self._rules[rule_id] = stored
            await self._save()
        logger.info("[RuleStore] created rule '{}' ({})", rule_id, stored.name)
        return copy.deepcopy(stored)

    def get(self, rule_id: str) -> Rule | None:
        """Look up a rule by id (returns a copy)."""
        rule = self._rules.get(rule_id)
        return copy.deepcopy(rule) if rule is not None else None

    def list_rules(self) -> list[Rule]:
        """Return copies of all rules."""
        return [copy.deepcopy(r) for r in self._rules.values()]

    async def snapshot(self) -> list[Rule]:
        """Consistent copy of the rule list for one tick."""
        async with self._lock:
            return [copy.deepcopy(r) for r in self._rules.values()]

    async def update(self, rule_id: str, rule: Rule) -> Rule:
        """Replace a rule's whole document, keeping its trigger bookkeeping."""
        async with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleNotFoundError(rule_id)
            stored = replace(
                copy.deepcopy(rule),
                id=rule_id,
                last_triggered=current.last_triggered,
                trigger_count=current.trigger_count,
            )
            self._check(stored)
            self._check_refs(stored)
            self._rules[rule_id] = stored
            await self._save()
        logger.info("[RuleStore] updated rule '{}'", rule_id)
        return copy.deepcopy(stored)

    async def delete(self, rule_id: str) -> bool:
        """Remove a rule. Returns True if it existed."""
        async with self._lock:
            if self._rules.pop(rule_id, None) is None:
                return False
            await self._save()
        logger.info("[RuleStore] deleted rule '{}'", rule_id)
        return True

    async def toggle(self, rule_id: str, enabled: bool | None = None) -> Rule:
        """Set (or flip, when *enabled* is None) a rule's enabled flag."""
        async with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleNotFoundError(rule_id)
            new_state = (not current.enabled) if enabled is None else enabled
            stored = replace(current, enabled=new_state)
            self._rules[rule_id] = stored
            await self._save()
        logger.info(
            "[RuleStore] rule '{}' {}", rule_id, "enabled" if new_state else "disabled",
        )
        return copy.deepcopy(stored)

    async def record_triggers(self, fired: dict[str, datetime]) -> None:
        """Advance ``last_triggered``/``trigger_count`` for fired rules.

        Rules deleted since the tick started are ignored.
        """
        if not fired:
            return
        async with self._lock:
            changed = False
            for rule_id, when in fired.items():
                current = self._rules.get(rule_id)
                if current is None:
                    logger.debug("[RuleStore] fired rule '{}' no longer exists", rule_id)
                    continue
                self._rules[rule_id] = replace(
                    current,
                    last_triggered=when,
                    trigger_count=current.trigger_count + 1,
                )
                changed = True
            if changed:
                await self._save()

    @property
    def rule_count(self) -> int:
        return len(self._rules)
