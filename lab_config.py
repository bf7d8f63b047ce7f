"""
Tiered configuration for the lab workflows.

Every parameter is declared once in a table and resolved by walking a chain
of lookups (environment, then parameters document, then built-in default).
The first non-empty answer wins. Required parameters that nothing answers are
collected and reported together.
"""

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from dotenv import dotenv_values
from rich.console import Console

from errors import ConfigurationError, MalformedDocumentError, MissingRequiredParameter

console = Console()

# ─────────────────────────────────────────────────────────────────────────────
# CONSTANTS
# ─────────────────────────────────────────────────────────────────────────────

ENV_FILE = ".env"
TEMPLATE_FILE = "infra/main.bicep"
LAB_PARAMETERS_FILE = "infra/main.parameters.json"
MARKETPLACE_PARAMETERS_FILE = "marketplace/vbazure.parameters.json"

MRG_SUFFIX = "-mrg"
TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass(frozen=True)
class Parameter:
    name: str
    env_var: str | None = None
    doc_key: str | None = None
    default: Any = None
    required: bool = True
    is_object: bool = False

    @property
    def label(self) -> str:
        return self.env_var or self.name


LAB_PARAMETERS = [
    Parameter('subscriptionId', 'SUBSCRIPTION_ID'),
    Parameter('adminPassword', 'ADMIN_PASSWORD', doc_key='adminPassword'),
    Parameter('location', 'LOCATION', doc_key='location', default='westeurope'),
    Parameter('rgName', 'RG_NAME', default='veeam-lab-rg'),
    Parameter('prefix', 'PREFIX', doc_key='prefix', default='veeam-lab'),
    Parameter('adminUsername', 'ADMIN_USERNAME', doc_key='adminUsername', default='veeamadmin', required=False),
    Parameter('allowedRdpSource', 'ALLOWED_RDP_SOURCE', doc_key='allowedRdpSource', default='0.0.0.0/0', required=False),
    Parameter('deployVbma', 'DEPLOY_VBMA', default='false', required=False),
]

MARKETPLACE_PARAMETERS = [
    Parameter('publisher', 'VBMA_PUBLISHER', doc_key='publisher'),
    Parameter('offer', 'VBMA_OFFER', doc_key='offer'),
    Parameter('plan', 'VBMA_PLAN', doc_key='plan'),
    Parameter('planVersion', 'VBMA_PLAN_VERSION', doc_key='planVersion'),
    Parameter('managedApplicationName', 'VBMA_APP_NAME', doc_key='managedApplicationName'),
    Parameter('managedResourceGroupName', 'VBMA_MRG_NAME', doc_key='managedResourceGroupName'),
    Parameter('appParameters', 'VBMA_APP_PARAMS_JSON', doc_key='appParameters', default={},
              required=False, is_object=True),
]

# Template parameter name -> resolved config key
TEMPLATE_PARAMETERS = {
    'prefix': 'prefix',
    'location': 'location',
    'adminUsername': 'adminUsername',
    'adminPassword': 'adminPassword',
    'allowedRdpSource': 'allowedRdpSource',
}


# ─────────────────────────────────────────────────────────────────────────────
# SOURCES
# ─────────────────────────────────────────────────────────────────────────────

def load_environment(env_file: Path | str | None = None, environ: Mapping[str, str] | None = None) -> dict:
    """Process environment layered over an optional .env file (process env wins)."""
    values = {}
    if env_file and Path(env_file).is_file():
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update(os.environ if environ is None else environ)
    return values


def load_parameter_document(path: Path | str) -> dict:
    """Return the `parameters` object of an ARM-style parameters file.

    A missing file yields {}. A leading UTF-8 BOM is ignored. Anything that
    does not parse as a JSON object raises MalformedDocumentError.
    """
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        # utf-8-sig drops the BOM that some editors prepend
        data = json.loads(path.read_bytes().decode('utf-8-sig'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedDocumentError(path, str(e)) from e
    if not isinstance(data, dict):
        raise MalformedDocumentError(path, "top level is not an object")
    parameters = data.get('parameters', {})
    if not isinstance(parameters, dict):
        raise MalformedDocumentError(path, "'parameters' is not an object")
    return parameters


def read_parameter_document(path: Path | str | None) -> dict:
    """Like load_parameter_document, but a broken file only produces a warning."""
    if not path:
        return {}
    try:
        return load_parameter_document(path)
    except MalformedDocumentError as e:
        console.print(f"[yellow]⚠ {e} - ignoring this file[/yellow]")
        return {}


# ─────────────────────────────────────────────────────────────────────────────
# RESOLUTION CHAIN
# ─────────────────────────────────────────────────────────────────────────────

Lookup = Callable[[Parameter], Any]


def env_lookup(env: Mapping[str, str]) -> Lookup:
    def lookup(param: Parameter):
        if not param.env_var:
            return None
        raw = env.get(param.env_var)
        if raw is None or not raw.strip():
            return None
        if not param.is_object:
            return raw
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{param.env_var} is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise ConfigurationError(f"{param.env_var} must be a JSON object")
        return value
    return lookup


def document_lookup(parameters: Mapping[str, Any]) -> Lookup:
    def lookup(param: Parameter):
        if not param.doc_key:
            return None
        entry = parameters.get(param.doc_key)
        value = entry.get('value') if isinstance(entry, dict) else None
        if value is None:
            return None
        if param.is_object:
            return value if isinstance(value, dict) else None
        if isinstance(value, (dict, list)):
            return None
        return str(value)
    return lookup


def default_lookup(param: Parameter):
    if isinstance(param.default, dict):
        return dict(param.default)
    return param.default


@dataclass
class Resolution:
    values: dict = field(default_factory=dict)
    sources: dict = field(default_factory=dict)


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def resolve(parameters: list[Parameter], chain: list[tuple[str, Lookup]]) -> Resolution:
    """Resolve each parameter through the chain; raise for every unresolved required one."""
    resolution = Resolution()
    missing = []
    for param in parameters:
        for source, lookup in chain:
            value = lookup(param)
            if not _is_empty(value):
                resolution.values[param.name] = value
                resolution.sources[param.name] = source
                break
        else:
            if param.required:
                missing.append(param.label)
    if missing:
        raise MissingRequiredParameter(missing)
    return resolution


def parse_bool(value) -> bool:
    return str(value).strip().lower() in TRUE_VALUES


# ─────────────────────────────────────────────────────────────────────────────
# LAB CONFIG
# ─────────────────────────────────────────────────────────────────────────────

def resolve_lab_config(env: Mapping[str, str], document: Mapping[str, Any] | None = None) -> dict:
    """Resolve the baseline lab parameters (ResolvedConfig)."""
    chain = [
        ('env', env_lookup(env)),
        ('document', document_lookup(document or {})),
        ('default', default_lookup),
    ]
    return resolve(LAB_PARAMETERS, chain).values


def template_parameters(config: Mapping[str, str]) -> dict:
    return {name: config[key] for name, key in TEMPLATE_PARAMETERS.items() if key in config}


def deployment_name(now: datetime | None = None) -> str:
    return f"baseline-{(now or datetime.now()).strftime('%Y%m%d%H%M%S')}"


# ─────────────────────────────────────────────────────────────────────────────
# MARKETPLACE OFFER
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketplaceOffer:
    publisher: str
    offer: str
    plan: str
    plan_version: str
    app_name: str
    mrg_name: str
    app_parameters: dict = field(default_factory=dict)
    # True when the managed RG name came straight from VBMA_MRG_NAME
    mrg_from_env: bool = False

    def with_mrg_name(self, name: str) -> 'MarketplaceOffer':
        return replace(self, mrg_name=name)


def resolve_marketplace_offer(env: Mapping[str, str], document: Mapping[str, Any] | None,
                              rg_name: str) -> MarketplaceOffer:
    """Resolve the offer and keep the managed RG apart from the base RG."""
    chain = [
        ('env', env_lookup(env)),
        ('document', document_lookup(document or {})),
        ('default', default_lookup),
    ]
    resolution = resolve(MARKETPLACE_PARAMETERS, chain)
    values = resolution.values
    offer = MarketplaceOffer(
        publisher=values['publisher'],
        offer=values['offer'],
        plan=values['plan'],
        plan_version=values['planVersion'],
        app_name=values['managedApplicationName'],
        mrg_name=values['managedResourceGroupName'],
        app_parameters=values.get('appParameters', {}),
        mrg_from_env=resolution.sources.get('managedResourceGroupName') == 'env',
    )
    return ensure_distinct_mrg(offer, rg_name)


def ensure_distinct_mrg(offer: MarketplaceOffer, rg_name: str) -> MarketplaceOffer:
    """Azure rejects a managed app whose managed RG is its own resource group."""
    if offer.mrg_name != rg_name:
        return offer
    renamed = f"{rg_name}{MRG_SUFFIX}"
    console.print(f"[yellow]⚠ Managed resource group name equals {rg_name}; using {renamed}[/yellow]")
    return offer.with_mrg_name(renamed)


def timestamped_name(name: str, now: datetime | None = None) -> str:
    return f"{name}-{(now or datetime.now()).strftime('%Y%m%d%H%M%S')}"
