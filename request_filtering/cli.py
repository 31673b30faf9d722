import argparse
import json
import socket
import sys
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urlparse

import requests

from .address import ip_family, is_ip
from .adapters import filtering_session
from .errors import DeniedConnectionError
from .policy import PolicyConfig, PolicyEvaluator, load_config


@dataclass(frozen=True)
class CheckResult:
    target: str
    host: str
    address: str
    family: Optional[int]
    allowed: bool
    message: str


def _target_host(target: str) -> str:
    text = str(target).strip()
    if "://" in text:
        return urlparse(text).hostname or ""
    if text.startswith("[") and text.endswith("]"):
        return text[1:-1]
    return text


def _resolve(host: str) -> list[tuple[str, int]]:
    resolved = []
    for af, _socktype, _proto, _canon, sockaddr in socket.getaddrinfo(host, None, 0, socket.SOCK_STREAM):
        family = 4 if af == socket.AF_INET else 6
        if (sockaddr[0], family) not in resolved:
            resolved.append((sockaddr[0], family))
    return resolved


def check_target(target: str, evaluator: PolicyEvaluator) -> list[CheckResult]:
    host = _target_host(target)
    if is_ip(host):
        return [_result(target, host, evaluator.evaluate_target(host, ip_family(host)))]

    return [
        _result(target, host, evaluator.evaluate(address, host=host, family=family))
        for address, family in _resolve(host)
    ]


def _result(target, host, outcome) -> CheckResult:
    message = "admitted" if outcome.allowed else outcome.message
    return CheckResult(target, host, outcome.address, outcome.family, outcome.allowed, message)


def _state_tag(allowed: bool) -> str:
    return "[OK]" if allowed else "[DENY]"


def _render_results(results: list[CheckResult]) -> str:
    lines = []
    for item in results:
        lines.append(f"{_state_tag(item.allowed):7} {item.address:39} {item.message}")
    return "\n".join(lines)


def _build_config(args: argparse.Namespace) -> PolicyConfig:
    base = load_config(args.config or None)
    options = base.to_options()
    if args.allow_private:
        options["allowPrivateIPAddress"] = True
    if args.allow_meta:
        options["allowMetaIPAddress"] = True
    if args.stop_port_scanning:
        options["stopPortScanningByUrlRedirection"] = True
    if args.allow:
        options["allowIPAddressList"] = list(base.allow_ip_address_list) + list(args.allow)
    if args.deny:
        options["denyIPAddressList"] = list(base.deny_ip_address_list) + list(args.deny)
    return PolicyConfig.from_options(options)


def _run_check(args: argparse.Namespace, config: PolicyConfig) -> int:
    evaluator = PolicyEvaluator(config)
    results = []
    rc = 0
    for target in args.targets:
        try:
            results.extend(check_target(target, evaluator))
        except socket.gaierror as exc:
            print(f"{target}: resolution failed: {exc}", file=sys.stderr)
            rc = 2

    if args.as_json:
        print(json.dumps([item.__dict__ for item in results], indent=2))
    elif results:
        print(_render_results(results))

    if rc == 0 and not all(item.allowed for item in results):
        rc = 1
    return rc


def _run_fetch(args: argparse.Namespace, config: PolicyConfig) -> int:
    session = filtering_session(config)
    try:
        response = session.get(args.url, timeout=args.timeout)
    except DeniedConnectionError as exc:
        print(str(exc.denial or exc), file=sys.stderr)
        return 1
    except requests.RequestException as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return 2
    finally:
        session.close()

    if args.as_json:
        print(json.dumps({"url": args.url, "status": response.status_code}))
    else:
        print(f"{response.status_code} {args.url}")
    return 0


def _add_policy_flags(parser: argparse.ArgumentParser):
    parser.add_argument("--config", default="", help="Policy YAML file (default: request-filtering.yaml).")
    parser.add_argument("--allow-private", action="store_true", help="Allow private and reserved addresses.")
    parser.add_argument("--allow-meta", action="store_true", help="Allow 0.0.0.0 and ::.")
    parser.add_argument("--allow", action="append", default=[], help="Allow an address or CIDR (repeatable).")
    parser.add_argument("--deny", action="append", default=[], help="Deny an address or CIDR (repeatable).")
    parser.add_argument(
        "--stop-port-scanning",
        action="store_true",
        help="Refuse literal private targets before connecting.",
    )
    parser.add_argument("--json", action="store_true", dest="as_json", help="Print JSON output.")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check outbound destinations against the request filtering policy.")
    sub = parser.add_subparsers(dest="command", required=True)

    check_parser = sub.add_parser("check", help="Evaluate the addresses of URLs, hosts or IPs.")
    check_parser.add_argument("targets", nargs="+", help="URL, hostname or IP address.")
    _add_policy_flags(check_parser)

    fetch_parser = sub.add_parser("fetch", help="GET a URL through the filtering adapters.")
    fetch_parser.add_argument("url", help="URL to fetch.")
    fetch_parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds.")
    _add_policy_flags(fetch_parser)

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    config = _build_config(args)

    if args.command == "check":
        return _run_check(args, config)
    if args.command == "fetch":
        return _run_fetch(args, config)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
