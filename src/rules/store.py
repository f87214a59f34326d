"""
JSON persistence for the rule book, with explicit schema migrations.

On-disk format (version 2)::

    {"version": 2, "rules": [{...camelCase rule...}, ...]}

History:
    v0: a bare JSON list of rules.
    v1: wrapped as {"version": 1, "rules": [...]}; conditions could use the
        legacy field name "price" and rules had no conditionMode.
    v2: conditionMode is always present; "price" is "priceYes".
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from ..config import RULES_PATH
from .models import RuleValidationError, TradingRule

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2


def _v0_to_v1(data: Any) -> dict[str, Any]:
    return {"version": 1, "rules": list(data)}


def _v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    rules = []
    for rule in data.get("rules", []):
        migrated = dict(rule)
        migrated.setdefault("conditionMode", "AND")
        migrated["conditions"] = [
            {**c, "field": "priceYes"} if c.get("field") == "price" else dict(c)
            for c in rule.get("conditions") or []
        ]
        rules.append(migrated)
    return {"version": 2, "rules": rules}


MIGRATIONS: dict[int, Callable[[Any], dict[str, Any]]] = {
    0: _v0_to_v1,
    1: _v1_to_v2,
}


def detect_version(data: Any) -> int:
    if isinstance(data, list):
        return 0
    if isinstance(data, dict) and isinstance(data.get("version"), int):
        return data["version"]
    raise RuleValidationError("Unrecognized rule file format")


def migrate(data: Any) -> dict[str, Any]:
    """Upgrade persisted rule data to CURRENT_VERSION, one step at a time."""
    version = detect_version(data)
    if version > CURRENT_VERSION:
        raise RuleValidationError(
            f"Rule file version {version} is newer than supported ({CURRENT_VERSION})"
        )
    while version < CURRENT_VERSION:
        logger.info(f"Migrating rule data v{version} -> v{version + 1}")
        data = MIGRATIONS[version](data)
        version = data["version"]
    return data


class RuleStore:
    """
    File-backed rule book.

    Example:
        >>> store = RuleStore("data/rules.json")
        >>> rules = store.load()
        >>> store.save(rules)
    """

    def __init__(self, path: str | Path = RULES_PATH) -> None:
        self.path = Path(path)

    def load(self) -> list[TradingRule]:
        """Load and migrate rules; a missing file is an empty rule book."""
        if not self.path.exists():
            logger.info(f"No rule file at {self.path}, starting empty")
            return []

        with open(self.path) as f:
            raw = json.load(f)

        needs_upgrade = detect_version(raw) < CURRENT_VERSION
        data = migrate(raw)
        rules = [TradingRule.from_dict(r) for r in data["rules"]]
        self._check_unique(rules)

        if needs_upgrade:
            self.save(rules)
        logger.info(f"Loaded {len(rules)} rule(s) from {self.path}")
        return rules

    def save(self, rules: list[TradingRule]) -> None:
        self._check_unique(rules)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": CURRENT_VERSION, "rules": [r.to_dict() for r in rules]}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2)
        tmp.replace(self.path)

    def get(self, rule_id: str) -> Optional[TradingRule]:
        return next((r for r in self.load() if r.id == rule_id), None)

    def upsert(self, rule: TradingRule) -> list[TradingRule]:
        """Add ``rule`` or replace the rule with the same id."""
        rules = self.load()
        for i, existing in enumerate(rules):
            if existing.id == rule.id:
                rules[i] = rule
                break
        else:
            rules.append(rule)
        self.save(rules)
        return rules

    def delete(self, rule_id: str) -> bool:
        rules = self.load()
        kept = [r for r in rules if r.id != rule_id]
        if len(kept) == len(rules):
            return False
        self.save(kept)
        return True

    @staticmethod
    def _check_unique(rules: list[TradingRule]) -> None:
        seen: set[str] = set()
        for rule in rules:
            if rule.id in seen:
                raise RuleValidationError(f"Duplicate rule id: {rule.id}")
            seen.add(rule.id)
