from enum import Enum

import requests


class DenialReason(str, Enum):
    META = "meta"
    PRIVATE = "private"
    DENY_LISTED = "deny-listed"


_REASON_SUFFIXES = {
    DenialReason.META: "Because, It is meta IP address.",
    DenialReason.PRIVATE: "Because, It is private IP address.",
    DenialReason.DENY_LISTED: "Because It is defined in denyIPAddressList.",
}


def format_denial_message(reason, address, host=None, family=None):
    # Dependents match on this text; keep it byte-for-byte stable.
    return (
        f"DNS lookup {address}(family:{family}, host:{host}) is not allowed. "
        f"{_REASON_SUFFIXES[DenialReason(reason)]}"
    )


class PolicyDenialError(PermissionError):
    """Raised when a connection target is rejected by the address policy.

    Subclasses ``OSError`` so that HTTP client stacks report it as an
    ordinary connection failure.
    """

    def __init__(self, reason, address, host=None, family=None):
        self.reason = DenialReason(reason)
        self.address = address
        self.host = host
        self.family = family
        super().__init__(format_denial_message(self.reason, address, host, family))

    def __str__(self):
        return self.args[0]

    def __reduce__(self):
        return (type(self), (self.reason, self.address, self.host, self.family))


class InvalidEntryError(ValueError):
    """A malformed address or CIDR entry in an allow or deny list."""

    def __init__(self, entry, cause=None):
        self.entry = entry
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Invalid address entry {entry!r}{detail}")
        self.__cause__ = cause


class DeniedConnectionError(requests.exceptions.ConnectionError):
    """A requests connection error whose root cause is a policy denial."""

    def __init__(self, *args, denial=None, **kwargs):
        self.denial = denial
        super().__init__(*args, **kwargs)

    @property
    def reason(self):
        return self.denial.reason if self.denial is not None else None
