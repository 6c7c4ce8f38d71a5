"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

WEBHOOK_ENV_VAR = "SLACK_WEBHOOK_URL"


@dataclass(frozen=True)
class BudgetConfig:
    """Spending limits for the battle loop."""
    daily_cap: Decimal = Decimal("15.00")
    throttle_fraction: Decimal = Decimal("0.20")
    per_battle_ceiling: Decimal = Decimal("5.00")
    per_run_ceiling: Optional[Decimal] = Decimal("5.00")

    def __post_init__(self):
        """Validate budget values."""
        if self.daily_cap <= 0:
            raise ValueError("daily_cap must be > 0")
        if not Decimal("0") < self.throttle_fraction < Decimal("1"):
            raise ValueError("throttle_fraction must be between 0 and 1 (exclusive)")
        if self.per_battle_ceiling <= 0:
            raise ValueError("per_battle_ceiling must be > 0")
        if self.per_run_ceiling is not None and self.per_run_ceiling <= 0:
            raise ValueError("per_run_ceiling must be > 0")

    @property
    def throttle_threshold(self) -> Decimal:
        return self.daily_cap * self.throttle_fraction


@dataclass(frozen=True)
class BattleConfig:
    """Per-battle conversation settings."""
    max_turns: int = 15
    temperature: float = 0.7
    closer_prompt_path: Optional[str] = None
    premium_persona: bool = False

    def __post_init__(self):
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class BatchConfig:
    """Defaults for batch runs."""
    batch_size: int = 10
    max_concurrent: int = 3
    delay_between_battles: float = 1.0
    max_battle_retries: int = 0

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.delay_between_battles < 0:
            raise ValueError("delay_between_battles must be >= 0")
        if self.max_battle_retries < 0:
            raise ValueError("max_battle_retries must be >= 0")


@dataclass(frozen=True)
class CriterionConfig:
    """One weighted rubric criterion, scored 0-10 by the referee."""
    name: str
    weight: Decimal
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("criterion name cannot be empty")
        if self.weight <= 0:
            raise ValueError(f"weight for criterion '{self.name}' must be > 0")


DEFAULT_CRITERIA: Tuple[CriterionConfig, ...] = (
    CriterionConfig(
        name="math_defense",
        weight=Decimal("0.3333"),
        description=(
            "Did the closer hold the offer price and defend it with underwriting "
            "logic (repair estimates, market caps) when pressured? "
            "10 = perfect defense, 0 = conceded above the offer."
        ),
    ),
    CriterionConfig(
        name="humanity",
        weight=Decimal("0.3333"),
        description=(
            "Did the closer sound like a real person, using natural disfluencies "
            "and pauses? 10 = very human, 0 = robotic."
        ),
    ),
    CriterionConfig(
        name="success",
        weight=Decimal("0.3334"),
        description=(
            "Conversion momentum: verbal yes to the price (6 points), technical "
            "assistance with the contract document (2 points), signature secured "
            "(2 points)."
        ),
    ),
)


@dataclass(frozen=True)
class RefereeConfig:
    """Grading rubric and the optional audit gate."""
    criteria: Tuple[CriterionConfig, ...] = DEFAULT_CRITERIA
    audit_min_score: int = 70

    def __post_init__(self):
        if not self.criteria:
            raise ValueError("referee needs at least one criterion")
        names = [c.name for c in self.criteria]
        if len(set(names)) != len(names):
            raise ValueError("criterion names must be unique")
        total = sum((c.weight for c in self.criteria), Decimal("0"))
        if total != Decimal("1"):
            raise ValueError(f"criterion weights must sum to 1 (got {total})")
        if not 0 <= self.audit_min_score <= 100:
            raise ValueError("audit_min_score must be between 0 and 100")


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "battle_guard.db"


@dataclass(frozen=True)
class ArenaConfig:
    """Complete battle loop configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    battle: BattleConfig = field(default_factory=BattleConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    referee: RefereeConfig = field(default_factory=RefereeConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def default(cls) -> "ArenaConfig":
        """Reference configuration, with the webhook taken from the environment."""
        return cls(notifications=NotificationConfig(webhook_url=os.getenv(WEBHOOK_ENV_VAR)))


_SECTION_KEYS = {
    "budget": {"daily_cap", "throttle_fraction", "per_battle_ceiling", "per_run_ceiling"},
    "battle": {"max_turns", "temperature", "closer_prompt_path", "premium_persona"},
    "batch": {"batch_size", "max_concurrent", "delay_between_battles", "max_battle_retries"},
    "referee": {"criteria", "audit_min_score"},
    "notifications": {"webhook_url", "timeout_seconds"},
    "storage": {"db_path"},
}


def load_arena_config(path: str) -> ArenaConfig:
    """Load and validate arena configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected spend. Omitted sections and keys take their
    reference defaults; unknown ones are rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ArenaConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Arena config file not found: {path}")

    # Load YAML content
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    # Validate top-level structure
    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, allowed in _SECTION_KEYS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValueError(f"Unknown {name} keys: {unknown}")
        sections[name] = data

    budget_data = sections["budget"]
    defaults = BudgetConfig()
    per_run = budget_data.get("per_run_ceiling", defaults.per_run_ceiling)
    budget = BudgetConfig(
        daily_cap=_decimal(budget_data, "daily_cap", defaults.daily_cap, "budget"),
        throttle_fraction=_decimal(
            budget_data, "throttle_fraction", defaults.throttle_fraction, "budget"
        ),
        per_battle_ceiling=_decimal(
            budget_data, "per_battle_ceiling", defaults.per_battle_ceiling, "budget"
        ),
        per_run_ceiling=(
            None if per_run is None
            else _decimal(budget_data, "per_run_ceiling", defaults.per_run_ceiling, "budget")
        ),
    )

    battle_data = sections["battle"]
    battle = BattleConfig(
        max_turns=_int(battle_data, "max_turns", BattleConfig.max_turns, "battle"),
        temperature=_float(battle_data, "temperature", BattleConfig.temperature, "battle"),
        closer_prompt_path=_optional_str(battle_data, "closer_prompt_path", "battle"),
        premium_persona=_bool(battle_data, "premium_persona", False, "battle"),
    )

    batch_data = sections["batch"]
    batch = BatchConfig(
        batch_size=_int(batch_data, "batch_size", BatchConfig.batch_size, "batch"),
        max_concurrent=_int(batch_data, "max_concurrent", BatchConfig.max_concurrent, "batch"),
        delay_between_battles=_float(
            batch_data, "delay_between_battles", BatchConfig.delay_between_battles, "batch"
        ),
        max_battle_retries=_int(
            batch_data, "max_battle_retries", BatchConfig.max_battle_retries, "batch"
        ),
    )

    referee_data = sections["referee"]
    criteria = DEFAULT_CRITERIA
    if "criteria" in referee_data:
        criteria = _parse_criteria(referee_data["criteria"])
    referee = RefereeConfig(
        criteria=criteria,
        audit_min_score=_int(
            referee_data, "audit_min_score", RefereeConfig.audit_min_score, "referee"
        ),
    )

    notification_data = sections["notifications"]
    notifications = NotificationConfig(
        webhook_url=(
            _optional_str(notification_data, "webhook_url", "notifications")
            or os.getenv(WEBHOOK_ENV_VAR)
        ),
        timeout_seconds=_float(
            notification_data, "timeout_seconds", NotificationConfig.timeout_seconds,
            "notifications"
        ),
    )

    storage_data = sections["storage"]
    storage = StorageConfig(
        db_path=_optional_str(storage_data, "db_path", "storage") or StorageConfig.db_path
    )

    return ArenaConfig(
        budget=budget,
        battle=battle,
        batch=batch,
        referee=referee,
        notifications=notifications,
        storage=storage,
    )


def _parse_criteria(data: Any) -> Tuple[CriterionConfig, ...]:
    """Parse and validate the rubric criteria mapping.

    Args:
        data: Mapping of criterion name to ``{weight, description}``

    Returns:
        Criteria in file order

    Raises:
        ValueError: If the mapping is invalid
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'referee.criteria' must be a non-empty dictionary")

    criteria = []
    for name, entry in data.items():
        path = f"referee.criteria.{name}"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown = set(entry.keys()) - {"weight", "description"}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        if "weight" not in entry:
            raise ValueError(f"Missing required 'weight' in {path}")
        description = entry.get("description", "")
        if not isinstance(description, str):
            raise ValueError(f"'description' in {path} must be a string")
        criteria.append(CriterionConfig(
            name=str(name),
            weight=_decimal(entry, "weight", None, path),
            description=description,
        ))
    return tuple(criteria)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _decimal(data: Dict, key: str, default: Optional[Decimal], path: str) -> Decimal:
    if key not in data:
        return default
    value = data[key]
    if not (_is_number(value) or isinstance(value, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")


def _int(data: Dict, key: str, default: int, path: str) -> int:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _float(data: Dict, key: str, default: float, path: str) -> float:
    if key not in data:
        return default
    value = data[key]
    if not _is_number(value):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _bool(data: Dict, key: str, default: bool, path: str) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _optional_str(data: Dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value
