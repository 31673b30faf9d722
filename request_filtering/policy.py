import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

import yaml

from .address import AddressRange, classify, ip_family, is_ip, match_entry
from .errors import DenialReason, PolicyDenialError
from .utils import audit, logger

DEFAULT_POLICY_FILE = "request-filtering.yaml"

# camelCase option name -> PolicyConfig field
_OPTION_FIELDS = {
    "allowPrivateIPAddress": "allow_private_ip_address",
    "allowMetaIPAddress": "allow_meta_ip_address",
    "allowIPAddressList": "allow_ip_address_list",
    "denyIPAddressList": "deny_ip_address_list",
    "stopPortScanningByUrlRedirection": "stop_port_scanning_by_url_redirection",
}
_LIST_FIELDS = ("allow_ip_address_list", "deny_ip_address_list")
_LIST_NAMES = {
    "allow_ip_address_list": "allowIPAddressList",
    "deny_ip_address_list": "denyIPAddressList",
}


def _as_entries(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(item).strip() for item in value if str(item).strip())


@dataclass(frozen=True)
class PolicyConfig:
    allow_private_ip_address: bool = False
    allow_meta_ip_address: bool = False
    allow_ip_address_list: Tuple[str, ...] = field(default_factory=tuple)
    deny_ip_address_list: Tuple[str, ...] = field(default_factory=tuple)
    stop_port_scanning_by_url_redirection: bool = False

    def __post_init__(self):
        for name in _LIST_FIELDS:
            object.__setattr__(self, name, _as_entries(getattr(self, name)))
        for name in (
            "allow_private_ip_address",
            "allow_meta_ip_address",
            "stop_port_scanning_by_url_redirection",
        ):
            object.__setattr__(self, name, bool(getattr(self, name)))

    @classmethod
    def from_options(cls, options: Optional[Mapping] = None) -> "PolicyConfig":
        """Build a config from camelCase or snake_case option keys.

        Unknown keys are ignored so the same mapping can carry transport
        options (pool sizes, retries) alongside the filtering ones.
        """
        if options is None:
            return cls()
        if isinstance(options, PolicyConfig):
            return options
        values = {}
        for key, value in dict(options).items():
            name = _OPTION_FIELDS.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None:
                values[name] = value
        return cls(**values)

    def to_options(self) -> dict:
        return {option: getattr(self, name) for option, name in _OPTION_FIELDS.items()}


DEFAULT_CONFIG = PolicyConfig()


@dataclass(frozen=True)
class Admitted:
    address: str
    host: Optional[str] = None
    family: Optional[Union[int, str]] = None

    allowed = True


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    address: str
    host: Optional[str] = None
    family: Optional[Union[int, str]] = None

    allowed = False

    @property
    def message(self) -> str:
        return str(self.error())

    def error(self) -> PolicyDenialError:
        return PolicyDenialError(self.reason, self.address, self.host, self.family)


class PolicyEvaluator:
    """Admit/deny decisions for literal IP addresses.

    Holds only an immutable PolicyConfig, so one instance can be shared by
    every connection built from the same options.
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config if config is not None else DEFAULT_CONFIG

    def _matches_any(self, address, list_field):
        for entry in getattr(self.config, list_field):
            matched, error = match_entry(address, entry)
            if error is not None:
                logger.warning(
                    "[request-filtering-agent] Invalid CIDR in %s: %s",
                    _LIST_NAMES[list_field],
                    entry,
                    exc_info=error,
                )
                continue
            if matched:
                return True
        return False

    def is_allow_listed(self, address) -> bool:
        return bool(self.config.allow_ip_address_list) and self._matches_any(address, "allow_ip_address_list")

    def evaluate(self, address, host=None, family=None, allow_listed=None):
        """Evaluate one address; first applicable rule wins.

        Non-IP input is admitted: names carry no address risk until resolved,
        and the resolved addresses are evaluated on their own. Callers that
        already scanned the allow list pass the result as ``allow_listed``.
        """
        if not is_ip(address):
            return Admitted(str(address), host, family)

        config = self.config
        if allow_listed is None:
            allow_listed = self.is_allow_listed(address)
        if allow_listed:
            return Admitted(address, host, family)

        address_range = classify(address)
        if not config.allow_meta_ip_address and address_range is AddressRange.UNSPECIFIED:
            return Denied(DenialReason.META, address, host, family)

        if not config.allow_private_ip_address and address_range is not AddressRange.UNICAST:
            return Denied(DenialReason.PRIVATE, address, host, family)

        if config.deny_ip_address_list and self._matches_any(address, "deny_ip_address_list"):
            return Denied(DenialReason.DENY_LISTED, address, host, family)

        return Admitted(address, host, family)

    def check_port_scanning(self, host, family=None, allow_listed=None):
        """Pre-connection guard against port probing through redirects.

        When enabled, a literal non-unicast target is refused before any
        socket exists, even if private addresses are otherwise allowed, so
        open and closed ports look the same to the requester. Allow-listed
        addresses still pass.
        """
        if not self.config.stop_port_scanning_by_url_redirection:
            return None
        if not is_ip(host):
            return None
        if allow_listed is None:
            allow_listed = self.is_allow_listed(host)
        if allow_listed:
            return None
        if classify(host) is AddressRange.UNICAST:
            return None
        family = family or ip_family(host)
        audit("PORT_SCAN_GUARD", f"{host} (family:{family})", "BLOCKED")
        return Denied(DenialReason.PRIVATE, host, host, family)

    def evaluate_target(self, host, family=None):
        """Evaluate a literal connection target: port-scan guard, then the address rules.

        The allow list is scanned once, so a malformed entry is reported once
        per target.
        """
        family = family or ip_family(host)
        allow_listed = self.is_allow_listed(host)
        outcome = self.check_port_scanning(host, family, allow_listed=allow_listed)
        if outcome is not None:
            return outcome
        return self.evaluate(host, host=host, family=family, allow_listed=allow_listed)


def evaluate(address, host=None, family=None, config: Optional[PolicyConfig] = None):
    return PolicyEvaluator(config).evaluate(address, host=host, family=family)


# --- Loading ---

def _resolve_policy_path(path=None) -> Path:
    raw = path or os.environ.get("REQUEST_FILTERING_POLICY") or DEFAULT_POLICY_FILE
    return Path(raw).expanduser()


def _read_policy_raw(path: Path):
    # Priority 1: policy passed directly via environment variable.
    env_policy = os.environ.get("REQUEST_FILTERING_POLICY_CONTENT")
    if env_policy:
        audit("LOAD_POLICY", "Loading policy from environment variable", "INFO")
        return env_policy, "env"

    # Priority 2: policy file.
    return path.read_text(encoding="utf-8"), "file"


def load_config(path=None) -> PolicyConfig:
    """Load a PolicyConfig from YAML, falling back to the defaults."""
    policy_path = _resolve_policy_path(path)
    source = "file"
    try:
        raw, source = _read_policy_raw(policy_path)
        loaded = yaml.safe_load(raw)
    except FileNotFoundError:
        if path is not None:
            audit("LOAD_POLICY", f"Policy file not found: {policy_path}", "ERROR")
        return PolicyConfig()
    except OSError as e:
        audit("LOAD_POLICY", f"Unreadable policy file at {policy_path}: {e}", "ERROR")
        return PolicyConfig()
    except yaml.YAMLError as e:
        if source == "env":
            audit("LOAD_POLICY", f"Invalid policy in env var: {e}", "ERROR")
        else:
            audit("LOAD_POLICY", f"Invalid policy file at {policy_path}: {e}", "ERROR")
        return PolicyConfig()

    if not isinstance(loaded, dict):
        return PolicyConfig()
    section = loaded.get("request_filtering", loaded)
    if not isinstance(section, dict):
        audit("LOAD_POLICY", f"'request_filtering' must be a mapping in {policy_path}", "ERROR")
        return PolicyConfig()
    return PolicyConfig.from_options(section)
