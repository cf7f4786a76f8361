"""Agent settings.

Settings load from keyword arguments and ``HARVESTPY_`` environment
variables (nested fields use ``__``, e.g.
``HARVESTPY_TRANSACTION_TRACER__TOP_N=5``). Runtime changes go through
``AgentSettings.update`` so observers registered with ``on_change`` run
synchronously after the mutation.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from harvestpy.core.errors import ConfigurationError
from harvestpy.core.response import CollectorResponse

logger = logging.getLogger(__name__)

Observer = Callable[[Any], None]

SECRET_SETTINGS = frozenset({"license_key", "proxy", "proxy_pass"})

# Server-side values the agent always accepts.
SERVER_SETTINGS = frozenset(
    {
        "account_id",
        "application_id",
        "apdex_t",
        "collect_errors",
        "collect_traces",
        "data_report_period",
        "max_payload_size_in_bytes",
        "sampling_target",
        "sampling_target_period_in_seconds",
        "transaction_tracer.enabled",
        "transaction_tracer.top_n",
        "transaction_tracer.transaction_threshold",
        "error_collector.enabled",
    }
)

# Keys consumed by the collector connection rather than the settings.
CONNECTION_KEYS = frozenset({"messages", "request_headers_map", "high_security"})

# Server flags that may switch a data kind off but never on.
DISABLE_ONLY = {
    "collect_analytics_events": "transaction_events.enabled",
    "collect_custom_events": "custom_insights_events.enabled",
}


class _Section(BaseModel):
    model_config = ConfigDict(validate_assignment=True, extra="ignore")


class TransactionTracerSettings(_Section):
    enabled: bool = True
    top_n: int = 20
    transaction_threshold: float | Literal["apdex_f"] | None = "apdex_f"
    record_sql: Literal["off", "obfuscated", "raw"] = "obfuscated"


class EnabledSettings(_Section):
    enabled: bool = False


class ReservoirSettings(_Section):
    enabled: bool = True
    max_samples_stored: int = 10000


class ErrorCollectorSettings(_Section):
    enabled: bool = True
    max_traces: int = 20


class LogForwardingSettings(_Section):
    enabled: bool = True
    max_samples_stored: int = 10000


class ApplicationLoggingSettings(_Section):
    forwarding: LogForwardingSettings = Field(default_factory=LogForwardingSettings)


class AttributesSettings(_Section):
    include_enabled: bool = True


class ApiSettings(_Section):
    custom_attributes_enabled: bool = True
    custom_events_enabled: bool = True


@dataclass(frozen=True)
class SecurityPolicy:
    """How one server-side security policy maps onto a local setting.

    Attributes:
        path: Dotted setting name.
        allowed_values: (value when disabled, value when enabled).
        ranking: Possible values, most secure first.
    """

    path: str
    allowed_values: tuple[Any, Any]
    ranking: tuple[Any, ...]

    def most_secure(self, local: Any, policy: Any) -> Any:
        rank = {value: index for index, value in enumerate(self.ranking)}
        return min(local, policy, key=lambda v: rank.get(v, len(self.ranking)))


SECURITY_POLICIES: dict[str, SecurityPolicy] = {
    "record_sql": SecurityPolicy(
        "transaction_tracer.record_sql",
        ("off", "obfuscated"),
        ("off", "obfuscated", "raw"),
    ),
    "attributes_include": SecurityPolicy(
        "attributes.include_enabled", (False, True), (False, True)
    ),
    "allow_raw_exception_messages": SecurityPolicy(
        "strip_exception_messages.enabled", (True, False), (True, False)
    ),
    "custom_events": SecurityPolicy(
        "api.custom_events_enabled", (False, True), (False, True)
    ),
    "custom_parameters": SecurityPolicy(
        "api.custom_attributes_enabled", (False, True), (False, True)
    ),
}


class AgentSettings(BaseSettings):
    """Live agent configuration with change observers."""

    model_config = SettingsConfigDict(
        env_prefix="HARVESTPY_",
        env_nested_delimiter="__",
        validate_assignment=True,
        extra="ignore",
    )

    app_name: list[str] = ["My Application"]
    license_key: str = ""
    agent_enabled: bool = True
    host: str = "collector.example.com"
    port: int = 443
    ssl: bool = True
    proxy: str | None = None
    proxy_host: str | None = None
    proxy_port: int | None = None
    proxy_user: str | None = None
    proxy_pass: str | None = None
    high_security: bool = False
    security_policies_token: str = ""
    run_id: str | None = None
    account_id: str | None = None
    application_id: str | None = None
    apdex_t: float = 0.1
    data_report_period: float = 60
    collect_traces: bool = True
    collect_errors: bool = True
    max_trace_segments: int = 900
    max_payload_size_in_bytes: int = 1_000_000
    sampling_target: int = 10
    sampling_target_period_in_seconds: float = 60
    transaction_tracer: TransactionTracerSettings = Field(
        default_factory=TransactionTracerSettings
    )
    serverless_mode: EnabledSettings = Field(default_factory=EnabledSettings)
    transaction_events: ReservoirSettings = Field(default_factory=ReservoirSettings)
    custom_insights_events: ReservoirSettings = Field(
        default_factory=lambda: ReservoirSettings(max_samples_stored=3000)
    )
    error_collector: ErrorCollectorSettings = Field(
        default_factory=ErrorCollectorSettings
    )
    application_logging: ApplicationLoggingSettings = Field(
        default_factory=ApplicationLoggingSettings
    )
    attributes: AttributesSettings = Field(default_factory=AttributesSettings)
    strip_exception_messages: EnabledSettings = Field(default_factory=EnabledSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    _observers: dict[str, list[Observer]] = PrivateAttr(default_factory=dict)

    def on_change(self, key: str, callback: Observer) -> None:
        """Register ``callback`` for a dotted setting name or "change".

        Key observers receive the new value; "change" observers receive
        the dict of every changed key in one update.
        """
        self._observers.setdefault(key, []).append(callback)

    def get(self, key: str) -> Any:
        owner, name = self._resolve(key)
        return getattr(owner, name)

    def update(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Apply dotted-key changes, then notify observers.

        Args:
            changes: Dotted setting names mapped to new values.

        Returns:
            The keys whose value actually changed, with their new values.

        Raises:
            KeyError: If a key names no setting.
            pydantic.ValidationError: If a value does not validate.
        """
        diff: dict[str, Any] = {}
        for key, value in changes.items():
            self._assign(key, value, diff)
        self._notify(diff)
        return diff

    def validate_for_start(self) -> None:
        """Raise ConfigurationError if the agent cannot connect."""
        if not self.serverless_mode.enabled and not self.license_key:
            raise ConfigurationError("Not starting without license key!")

    def apply_server_config(self, payload: Mapping[str, Any] | None) -> dict[str, Any]:
        """Merge the connect response into the settings.

        A high-security agent talking to a server that is not in high
        security mode disables itself instead.

        Returns:
            The applied diff.
        """
        payload = payload or {}
        if self.high_security and not payload.get("high_security"):
            logger.error("High security mode mismatch, disabling the agent.")
            return self.update({"agent_enabled": False})

        diff: dict[str, Any] = {}
        self._collect_server_values(payload, diff)
        self._notify(diff)
        return diff

    def apply_security_policies(
        self,
        policies: Mapping[str, Mapping[str, Any]],
        clear_data: Callable[[str], None] | None = None,
    ) -> CollectorResponse:
        """Resolve security policies from preconnect against local settings.

        Args:
            policies: Policy name mapped to ``{"enabled", "required"}``.
            clear_data: Called with a policy name when the policy tightened
                a setting, so data collected under the old value is dropped.

        Returns:
            fatal when the policies cannot be honoured, otherwise success
            carrying the known policies to send with ``connect``.
        """
        if not self.security_policies_token:
            if policies:
                logger.error(
                    "The agent received one or more unexpected security "
                    "policies and will shut down."
                )
                return CollectorResponse.fatal()
            return CollectorResponse.success()

        missing_expected = [name for name in SECURITY_POLICIES if name not in policies]
        if missing_expected:
            logger.error(
                "The agent did not receive one or more security policies that "
                "it expected and will shut down: %s.",
                ", ".join(missing_expected),
            )
            return CollectorResponse.fatal()

        missing_required = [
            name
            for name, policy in policies.items()
            if name not in SECURITY_POLICIES and policy.get("required")
        ]
        if missing_required:
            logger.error(
                "The agent received one or more required security policies "
                "that it does not recognize and will shut down: %s.",
                ", ".join(missing_required),
            )
            return CollectorResponse.fatal()

        final: dict[str, dict[str, Any]] = {}
        diff: dict[str, Any] = {}
        for name, policy in policies.items():
            mapping = SECURITY_POLICIES.get(name)
            if mapping is None:
                continue
            local = self.get(mapping.path)
            wanted = mapping.allowed_values[1 if policy.get("enabled") else 0]
            value = mapping.most_secure(local, wanted)
            self._assign(mapping.path, value, diff)
            enabled = value == mapping.allowed_values[1]
            final[name] = {**policy, "enabled": enabled}
            if value != local and clear_data is not None:
                clear_data(name)
        self._notify(diff)
        return CollectorResponse.success(final)

    def public_settings(self) -> dict[str, Any]:
        """Flattened settings without secrets, for ``agent_settings``."""
        flat: dict[str, Any] = {}
        _flatten("", self.model_dump(), flat)
        return {k: v for k, v in flat.items() if k not in SECRET_SETTINGS}

    def _collect_server_values(
        self, payload: Mapping[str, Any], diff: dict[str, Any]
    ) -> None:
        for key, value in payload.items():
            if key in CONNECTION_KEYS:
                continue
            if key == "agent_config":
                self._collect_server_values(value or {}, diff)
            elif key == "agent_run_id":
                self._assign("run_id", None if value is None else str(value), diff)
            elif key in DISABLE_ONLY:
                if value is False:
                    self._assign(DISABLE_ONLY[key], False, diff)
            elif key == "ssl":
                if not value:
                    logger.warning("SSL can no longer be disabled, not updating.")
            elif key in SERVER_SETTINGS:
                try:
                    self._assign(key, value, diff)
                except ValidationError as exc:
                    logger.warning("Ignoring invalid server value for %s: %s", key, exc)
            else:
                logger.debug("Ignoring unsupported server setting %s.", key)

    def _resolve(self, key: str) -> tuple[BaseModel, str]:
        *path, name = key.split(".")
        owner: BaseModel = self
        for part in path:
            if part not in type(owner).model_fields:
                raise KeyError(key)
            owner = getattr(owner, part)
        if name not in type(owner).model_fields:
            raise KeyError(key)
        return owner, name

    def _assign(self, key: str, value: Any, diff: dict[str, Any]) -> None:
        owner, name = self._resolve(key)
        old = getattr(owner, name)
        setattr(owner, name, value)
        new = getattr(owner, name)
        if new != old:
            diff[key] = new

    def _notify(self, diff: dict[str, Any]) -> None:
        if not diff:
            return
        for key, value in diff.items():
            for callback in list(self._observers.get(key, ())):
                callback(value)
        for callback in list(self._observers.get("change", ())):
            callback(dict(diff))


def _flatten(prefix: str, data: Mapping[str, Any], out: dict[str, Any]) -> None:
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            _flatten(name + ".", value, out)
        else:
            out[name] = value
