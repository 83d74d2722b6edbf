"""
Settings Module

Two-level configuration: system-wide defaults, overridden per organization.
resolve(organization_id, key) = organization override ?? system default.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .errors import LoanValidationError
from .schedule import LoanCalculationMethod, coerce_method
from .storage import StorageInterface

LOAN_ENGINE_TYPE = "loan_engine_type"
LOAN_APPROVAL_REQUIRED = "loan_approval_required"
LOAN_AUTO_PROCESS_ENABLED = "loan_auto_process_enabled"

# Engine type names carried over from period-based and amortized setups
ENGINE_TYPE_ALIASES = {
    "SHORT_TERM": LoanCalculationMethod.SIMPLE_INTEREST,
    "LONG_TERM": LoanCalculationMethod.REDUCING_BALANCE,
}


@dataclass(frozen=True)
class EngineSettings:
    """Effective engine configuration for one organization"""
    engine_type: LoanCalculationMethod = LoanCalculationMethod.REDUCING_BALANCE
    loan_approval_required: bool = True
    auto_process_enabled: bool = True


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def coerce_engine_type(value: Any) -> LoanCalculationMethod:
    """Calculation method named by a loan_engine_type setting"""
    if isinstance(value, str) and value.strip().upper() in ENGINE_TYPE_ALIASES:
        return ENGINE_TYPE_ALIASES[value.strip().upper()]
    return coerce_method(value)


class SettingsManager:
    """Resolves settings with organization overrides over system defaults"""

    SYSTEM_TABLE = "system_settings"
    ORGANIZATION_TABLE = "organization_settings"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 config: Optional[LoanEngineConfig] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()

    def _builtin_defaults(self) -> Dict[str, Any]:
        return {
            LOAN_ENGINE_TYPE: self.config.loan_engine_type,
            LOAN_APPROVAL_REQUIRED: self.config.loan_approval_required,
            LOAN_AUTO_PROCESS_ENABLED: self.config.loan_auto_process_enabled,
        }

    @staticmethod
    def _override_id(organization_id: str, key: str) -> str:
        return f"{organization_id}:{key}"

    @staticmethod
    def _validate(key: str, value: Any) -> None:
        if not key:
            raise LoanValidationError("Setting key is required")
        if key == LOAN_ENGINE_TYPE:
            coerce_engine_type(value)

    def seed_system_defaults(self) -> None:
        """Write configured engine defaults into the system table, keeping existing values"""
        for key, value in self._builtin_defaults().items():
            if not self.storage.exists(self.SYSTEM_TABLE, key):
                self.set_system_default(key, value)

    def system_default(self, key: str) -> Any:
        data = self.storage.load(self.SYSTEM_TABLE, key)
        if data is not None:
            return data['value']
        return self._builtin_defaults().get(key)

    def resolve(self, organization_id: str, key: str) -> Any:
        """Organization override if present, else the system default"""
        data = self.storage.load(self.ORGANIZATION_TABLE, self._override_id(organization_id, key))
        if data is not None:
            return data['value']
        return self.system_default(key)

    def get_all(self, organization_id: str) -> Dict[str, Any]:
        """All settings visible to an organization, overrides applied"""
        settings = dict(self._builtin_defaults())
        for row in self.storage.load_all(self.SYSTEM_TABLE):
            settings[row['key']] = row['value']
        for row in self.storage.find(self.ORGANIZATION_TABLE, {'organization_id': organization_id}):
            settings[row['key']] = row['value']
        return settings

    def set(self, organization_id: str, key: str, value: Any,
            description: Optional[str] = None, updated_by: Optional[str] = None) -> None:
        """Create or replace an organization override"""
        self._validate(key, value)
        previous = self.resolve(organization_id, key)
        self.storage.save(self.ORGANIZATION_TABLE, self._override_id(organization_id, key), {
            'organization_id': organization_id,
            'key': key,
            'value': value,
            'description': description,
            'updated_by': updated_by,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        })
        self._audit(organization_id, key, previous, value, updated_by)

    def reset(self, organization_id: str, key: str, updated_by: Optional[str] = None) -> bool:
        """Drop an organization override; returns False when none existed"""
        previous = self.resolve(organization_id, key)
        removed = self.storage.delete(self.ORGANIZATION_TABLE, self._override_id(organization_id, key))
        if removed:
            self._audit(organization_id, key, previous, self.system_default(key), updated_by)
        return removed

    def set_system_default(self, key: str, value: Any, updated_by: Optional[str] = None) -> None:
        self._validate(key, value)
        previous = self.system_default(key)
        self.storage.save(self.SYSTEM_TABLE, key, {
            'key': key,
            'value': value,
            'updated_by': updated_by,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        })
        self._audit("system", key, previous, value, updated_by)

    def get_engine_settings(self, organization_id: str) -> EngineSettings:
        engine_type = self.resolve(organization_id, LOAN_ENGINE_TYPE)
        return EngineSettings(
            engine_type=coerce_engine_type(engine_type) if engine_type else LoanCalculationMethod.REDUCING_BALANCE,
            loan_approval_required=_as_bool(self.resolve(organization_id, LOAN_APPROVAL_REQUIRED), True),
            auto_process_enabled=_as_bool(self.resolve(organization_id, LOAN_AUTO_PROCESS_ENABLED), True),
        )

    def _audit(self, scope: str, key: str, previous: Any, value: Any, updated_by: Optional[str]) -> None:
        if self.audit_trail is None:
            return
        self.audit_trail.log_event(
            event_type=AuditEventType.SETTING_CHANGED,
            entity_type="setting",
            entity_id=f"{scope}:{key}",
            metadata={"key": key, "previous": previous, "value": value},
            user_id=updated_by
        )
