"""Masking policy loader.

Loads masking_policy.yaml and provides the age buckets, MRN masking rules,
hash pepper and PII detection patterns used by the masking module.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

# Default path to masking_policy.yaml (shipped with the package)
DEFAULT_POLICY_PATH = Path(__file__).parent / "masking_policy.yaml"


@dataclass
class PIIPattern:
    """A named regex that flags free text as potential PII."""

    name: str
    pattern: re.Pattern

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass
class MaskingPolicy:
    """Parsed masking policy."""

    schema_version: str
    pepper: str
    mrn_visible_digits: int
    mrn_mask: str
    age_groups: List[Tuple[int, str]]
    oldest_age_group: str
    invalid_age_group: str
    redaction_placeholder: str
    pii_patterns: List[PIIPattern] = field(default_factory=list)

    def age_group_for(self, age: int) -> str:
        """Return the age bucket label for an age in years (negative = invalid)."""
        if age < 0:
            return self.invalid_age_group
        for upper_bound, label in self.age_groups:
            if age < upper_bound:
                return label
        return self.oldest_age_group


class MaskingPolicyLoader:
    """Loader for the masking policy from YAML."""

    _cached_policy: Optional[MaskingPolicy] = None
    _cache_path: Optional[Path] = None

    @classmethod
    def load(cls, policy_path: Optional[Path] = None) -> MaskingPolicy:
        """Load the masking policy from a YAML file.

        Args:
            policy_path: Path to a policy file. Uses the packaged default if not specified.

        Returns:
            Parsed MaskingPolicy object.

        Raises:
            FileNotFoundError: If policy file doesn't exist.
            ValueError: If policy is invalid.
        """
        path = policy_path or DEFAULT_POLICY_PATH

        if cls._cached_policy is not None and cls._cache_path == path:
            return cls._cached_policy

        if not path.exists():
            raise FileNotFoundError(f"Masking policy not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        policy = cls._parse_policy(raw)

        cls._cached_policy = policy
        cls._cache_path = path

        return policy

    @classmethod
    def clear_cache(cls) -> None:
        """Clear the cached policy."""
        cls._cached_policy = None
        cls._cache_path = None

    @classmethod
    def _parse_policy(cls, raw: Dict) -> MaskingPolicy:
        """Parse raw YAML dict into MaskingPolicy.

        Raises:
            ValueError: If the policy is invalid.
        """
        hash_settings = raw.get("hash", {})
        pepper = hash_settings.get("default_pepper", "")
        pepper_env_var = hash_settings.get("pepper_env_var")
        if pepper_env_var and os.getenv(pepper_env_var):
            pepper = os.getenv(pepper_env_var)
            logger.debug(f"Using masking pepper from ${pepper_env_var}")

        mrn_settings = raw.get("mrn", {})
        visible_digits = int(mrn_settings.get("visible_digits", 4))
        if visible_digits < 0:
            raise ValueError(f"mrn.visible_digits must be >= 0, got {visible_digits}")

        age_groups = []
        previous_bound = 0
        for bucket in raw.get("age_groups", []):
            upper_bound = int(bucket["below"])
            if upper_bound <= previous_bound:
                raise ValueError(
                    f"age_groups must be strictly increasing, got {upper_bound} "
                    f"after {previous_bound}"
                )
            age_groups.append((upper_bound, str(bucket["label"])))
            previous_bound = upper_bound

        patterns = []
        for pattern_data in raw.get("pii_patterns", []):
            pattern_str = pattern_data.get("pattern", "")
            flags = re.IGNORECASE if pattern_data.get("case_insensitive") else 0
            try:
                compiled = re.compile(pattern_str, flags)
            except re.error as e:
                raise ValueError(f"Invalid regex in pii_patterns: {pattern_str}: {e}")
            patterns.append(PIIPattern(name=pattern_data.get("name", ""), pattern=compiled))

        return MaskingPolicy(
            schema_version=str(raw.get("schema_version", "1.0")),
            pepper=pepper,
            mrn_visible_digits=visible_digits,
            mrn_mask=mrn_settings.get("mask", "****"),
            age_groups=age_groups,
            oldest_age_group=raw.get("oldest_age_group", "90+"),
            invalid_age_group=raw.get("invalid_age_group", "Invalid"),
            redaction_placeholder=raw.get("redaction_placeholder", "[REDACTED]"),
            pii_patterns=patterns,
        )
