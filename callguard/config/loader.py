"""
Configuration management and loading.

Handles processing, redaction, billing and per-tenant settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from callguard.core.orchestrator import MAX_RETRIES
from callguard.core.pricing import BillingPlan
from callguard.core.redaction import DEFAULT_PADDING_SECONDS
from callguard.core.schedule import DEFAULT_DAILY_TIME


@dataclass(frozen=True)
class ProcessingSettings:
    """Transcription and analysis settings."""
    max_retries: int = MAX_RETRIES
    transcription_model: str = "whisper-1"
    analysis_model: str = "gpt-4o-mini"
    analysis_prompt: Optional[str] = None
    request_timeout_seconds: float = 120.0

    def __post_init__(self):
        """Validate processing values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")


@dataclass(frozen=True)
class RedactionSettings:
    enabled: bool = True
    padding_seconds: float = DEFAULT_PADDING_SECONDS

    def __post_init__(self):
        if self.padding_seconds < 0:
            raise ValueError("padding_seconds must be >= 0")


@dataclass(frozen=True)
class PlanSettings:
    """Base plan terms; the overage rate is platform wide."""
    base_monthly_charge_usd: Decimal = Decimal("0")
    included_audio_hours: Decimal = Decimal("0")


@dataclass(frozen=True)
class BillingSettings:
    overage_rate_per_minute_usd: Decimal = Decimal("0")
    default_plan: PlanSettings = field(default_factory=PlanSettings)


@dataclass(frozen=True)
class TenantSettings:
    """Per-tenant settings.

    Timezone and job times are kept as given; the scheduler degrades bad
    values to UTC and 02:00 instead of rejecting the tenant.
    """
    timezone: str = "UTC"
    plan: Optional[PlanSettings] = None
    jobs: Dict[str, str] = field(default_factory=dict)

    def daily_time_for(self, job_type: str) -> str:
        return self.jobs.get(job_type, DEFAULT_DAILY_TIME)


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration."""
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    redaction: RedactionSettings = field(default_factory=RedactionSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    tenants: Dict[str, TenantSettings] = field(default_factory=dict)

    def tenant(self, tenant_id: str) -> TenantSettings:
        """Settings for a tenant, using defaults if not configured."""
        return self.tenants.get(tenant_id, TenantSettings())

    def plan_for(self, tenant_id: str) -> BillingPlan:
        """The billing plan currently in force for a tenant."""
        plan = self.tenant(tenant_id).plan or self.billing.default_plan
        return BillingPlan(
            base_monthly_charge_usd=plan.base_monthly_charge_usd,
            included_hours=plan.included_audio_hours,
            per_minute_overage_rate=self.billing.overage_rate_per_minute_usd,
        )


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to wrong bills or unexpected processing behavior.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return PipelineConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _check_keys(raw_config, {'processing', 'redaction', 'billing', 'tenants'}, "configuration")

    tenants_data = _section(raw_config, 'tenants', "tenants")
    tenants = {}
    for tenant_id, tenant_data in tenants_data.items():
        if not isinstance(tenant_data, dict):
            raise ValueError(f"Tenant '{tenant_id}' must be a dictionary")
        tenants[str(tenant_id)] = _parse_tenant(tenant_data, f"tenants.{tenant_id}")

    return PipelineConfig(
        processing=_parse_processing(_section(raw_config, 'processing', "processing")),
        redaction=_parse_redaction(_section(raw_config, 'redaction', "redaction")),
        billing=_parse_billing(_section(raw_config, 'billing', "billing")),
        tenants=tenants,
    )


def _section(data: Dict, key: str, path: str) -> Dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _non_negative_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not number.is_finite() or number < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return number


def _parse_processing(data: Dict) -> ProcessingSettings:
    _check_keys(data, {'max_retries', 'transcription_model', 'analysis_model',
                       'analysis_prompt', 'request_timeout_seconds'}, "processing")
    defaults = ProcessingSettings()

    max_retries = data.get('max_retries', defaults.max_retries)
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError("'processing.max_retries' must be an integer >= 0")

    for key in ('transcription_model', 'analysis_model'):
        if key in data and (not isinstance(data[key], str) or not data[key].strip()):
            raise ValueError(f"'processing.{key}' must be a non-empty string")

    prompt = data.get('analysis_prompt')
    if prompt is not None and not isinstance(prompt, str):
        raise ValueError("'processing.analysis_prompt' must be a string")

    timeout = data.get('request_timeout_seconds', defaults.request_timeout_seconds)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'processing.request_timeout_seconds' must be > 0")

    return ProcessingSettings(
        max_retries=max_retries,
        transcription_model=data.get('transcription_model', defaults.transcription_model),
        analysis_model=data.get('analysis_model', defaults.analysis_model),
        analysis_prompt=prompt,
        request_timeout_seconds=float(timeout),
    )


def _parse_redaction(data: Dict) -> RedactionSettings:
    _check_keys(data, {'enabled', 'padding_seconds'}, "redaction")
    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError("'redaction.enabled' must be a boolean")
    padding = data.get('padding_seconds', DEFAULT_PADDING_SECONDS)
    if isinstance(padding, bool) or not isinstance(padding, (int, float)) or padding < 0:
        raise ValueError("'redaction.padding_seconds' must be >= 0")
    return RedactionSettings(enabled=enabled, padding_seconds=float(padding))


def _parse_plan(data: Any, path: str) -> PlanSettings:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'base_monthly_charge_usd', 'included_audio_hours'}, path)
    return PlanSettings(
        base_monthly_charge_usd=_non_negative_decimal(
            data.get('base_monthly_charge_usd', 0), f"{path}.base_monthly_charge_usd"),
        included_audio_hours=_non_negative_decimal(
            data.get('included_audio_hours', 0), f"{path}.included_audio_hours"),
    )


def _parse_billing(data: Dict) -> BillingSettings:
    _check_keys(data, {'overage_rate_per_minute_usd', 'default_plan'}, "billing")
    rate = _non_negative_decimal(
        data.get('overage_rate_per_minute_usd', 0), "billing.overage_rate_per_minute_usd")
    default_plan = PlanSettings()
    if 'default_plan' in data:
        default_plan = _parse_plan(data['default_plan'], "billing.default_plan")
    return BillingSettings(overage_rate_per_minute_usd=rate, default_plan=default_plan)


def _parse_tenant(data: Dict, path: str) -> TenantSettings:
    _check_keys(data, {'timezone', 'plan', 'jobs'}, path)

    timezone = data.get('timezone', "UTC")
    if not isinstance(timezone, str):
        raise ValueError(f"'{path}.timezone' must be a string")

    plan = _parse_plan(data['plan'], f"{path}.plan") if 'plan' in data else None

    jobs_data = data.get('jobs') or {}
    if not isinstance(jobs_data, dict):
        raise ValueError(f"'{path}.jobs' must be a dictionary")
    jobs = {}
    for job_type, job_data in jobs_data.items():
        job_path = f"{path}.jobs.{job_type}"
        if not isinstance(job_data, dict):
            raise ValueError(f"'{job_path}' must be a dictionary")
        _check_keys(job_data, {'daily_time'}, job_path)
        daily_time = job_data.get('daily_time', DEFAULT_DAILY_TIME)
        # Unquoted times such as 14:30 are read by YAML 1.1 as base-60 integers.
        if not isinstance(daily_time, str):
            raise ValueError(f"'{job_path}.daily_time' must be a quoted string such as '02:00'")
        jobs[str(job_type)] = daily_time

    return TenantSettings(timezone=timezone, plan=plan, jobs=jobs)
