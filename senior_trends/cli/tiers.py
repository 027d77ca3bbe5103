"""Tiered keyword files for scans."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class KeywordTiers:
    """Primary keywords drive discovery; secondary tiers only filter titles."""

    primary: list[str]
    secondary: list[list[str]] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "KeywordTiers":
        """Load tiers from YAML with a `primary:` list and optional `secondary:` lists."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping with a 'primary' list")

        primary = _string_list(data.get("primary"))
        if not primary:
            raise ValueError(f"{path}: 'primary' must list at least one keyword")

        raw_secondary = data.get("secondary") or []
        if not isinstance(raw_secondary, list):
            raise ValueError(f"{path}: 'secondary' must be a list of keyword lists")

        secondary: list[list[str]] = []
        for tier in raw_secondary:
            # A flat list of strings is read as one tier.
            keywords = _string_list(tier if isinstance(tier, list) else [tier])
            if keywords:
                secondary.append(keywords)
        return cls(primary=primary, secondary=secondary)


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]
