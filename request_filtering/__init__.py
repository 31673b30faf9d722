from .address import AddressRange, classify, is_ip, match_entry
from .adapters import (
    RequestFilteringAdapter,
    RequestFilteringHTTPAdapter,
    RequestFilteringHTTPSAdapter,
    apply_request_filter,
    filtering_session,
    global_http_adapter,
    global_https_adapter,
    use_adapter,
)
from .errors import DeniedConnectionError, DenialReason, InvalidEntryError, PolicyDenialError
from .gate import AttemptState, ConnectionAttempt, ConnectionGate
from .policy import DEFAULT_CONFIG, Admitted, Denied, PolicyConfig, PolicyEvaluator, evaluate, load_config
from .transport import ConnectOptions, SocketConnection, SocketConnectionFactory

__all__ = [
    "AddressRange",
    "Admitted",
    "AttemptState",
    "ConnectOptions",
    "ConnectionAttempt",
    "ConnectionGate",
    "DEFAULT_CONFIG",
    "Denied",
    "DeniedConnectionError",
    "DenialReason",
    "InvalidEntryError",
    "PolicyConfig",
    "PolicyDenialError",
    "PolicyEvaluator",
    "RequestFilteringAdapter",
    "RequestFilteringHTTPAdapter",
    "RequestFilteringHTTPSAdapter",
    "SocketConnection",
    "SocketConnectionFactory",
    "apply_request_filter",
    "classify",
    "evaluate",
    "filtering_session",
    "global_http_adapter",
    "global_https_adapter",
    "is_ip",
    "load_config",
    "match_entry",
    "use_adapter",
]
