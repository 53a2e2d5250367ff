#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
sigprint — fingerprint sign-in messages before you sign (offline).

What it does
- Reduces a Web3 sign-in message to a structural fingerprint: addresses become
  `_address_`, positions that vary across samples of one site become `_nonce_`.
- Compares the fingerprint with what this wallet (and this machine) has signed
  before, to spot templates reused across domains and messages without a nonce.

Outputs
- Ordered findings (phishing first, then replay), each info/warning/danger.
- Pretty console summary or JSON report; `--sign` commits to the local history.

Examples
  # Assess a message for a site
  $ python sigprint.py check "Sign in to example.com\nNonce: 8f2c" --domain example.com \
        --address 0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed --pretty

  # Record it once the user approved
  $ python sigprint.py check "..." --domain example.com --address 0x... --sign

  # Inspect fingerprints directly
  $ python sigprint.py fingerprint "Nonce: 1" "Nonce: 2" --pretty
"""

import copy
import json
import logging
import os
import re
import sys
import tempfile
import time
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import click
import structlog
from eth_utils import decode_hex, is_address, is_hex, to_checksum_address

ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")
WHITESPACE_SPLIT_RE = re.compile(r"(\s+)")

ADDRESS_PLACEHOLDER = "_address_"
NONCE_PLACEHOLDER = "_nonce_"

SEVERITIES = ("info", "warning", "danger")
SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITIES)}

PHISHING = "phishing"
REPLAY = "replay"

Fingerprint = Tuple[str, ...]
FingerprintInput = Union[str, Sequence[str]]

LOGGER_NAME = "sigprint"

# rendering happens in the handler that configure_logging installs; until then
# stdlib logging drops anything below WARNING
log = structlog.wrap_logger(
    logging.getLogger(LOGGER_NAME),
    wrapper_class=structlog.stdlib.BoundLogger,
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
)

# ---------------- logging ----------------

def configure_logging(level: str = "WARNING", fmt: str = "console") -> None:
    """Send sigprint's structlog events to stderr, filtered at `level`."""
    level_value = getattr(logging, level.upper(), logging.WARNING)
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers[:] = [handler]
    logger.setLevel(level_value)
    logger.propagate = False

# ---------------- errors ----------------

class FingerprintError(ValueError):
    """Base class for fingerprinting failures."""

class EmptyInput(FingerprintError):
    pass

class LengthMismatch(FingerprintError):
    """Samples tokenize to different lengths: not the same template."""

class StoreError(RuntimeError):
    pass

# ---------------- models ----------------

@dataclass(frozen=True)
class Ok:
    value: Fingerprint

@dataclass(frozen=True)
class Err:
    error: FingerprintError

FingerprintResult = Union[Ok, Err]

@dataclass(frozen=True)
class SignRequest:
    signer_address: str
    message: str
    domain: str
    display_name: str = ""

@dataclass(frozen=True)
class MessageInfo:
    signer_address: str
    message: str
    created_at: int          # ms since epoch
    domain: str
    display_name: str
    fingerprint: Fingerprint

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["fingerprint"] = list(self.fingerprint)
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "MessageInfo":
        return cls(
            signer_address=d["signer_address"],
            message=d["message"],
            created_at=int(d["created_at"]),
            domain=d["domain"],
            display_name=d.get("display_name", ""),
            fingerprint=tuple(d.get("fingerprint", ())),
        )

@dataclass(frozen=True)
class RiskFinding:
    severity: str   # info/warning/danger
    title: str
    body: str
    category: str   # phishing/replay

@dataclass
class AddressHistory:
    local_fingerprints: Dict[str, Fingerprint] = field(default_factory=dict)
    local_messages: Dict[str, MessageInfo] = field(default_factory=dict)

SigningHistory = Mapping[str, AddressHistory]
GlobalFingerprints = Mapping[str, Sequence[str]]

# ---------------- fingerprinting ----------------

def tokenize(text: str) -> Fingerprint:
    """Replace addresses, then split keeping whitespace runs as tokens."""
    text = ADDRESS_RE.sub(ADDRESS_PLACEHOLDER, text)
    return tuple(WHITESPACE_SPLIT_RE.split(text))

def _as_tokens(item: FingerprintInput) -> Fingerprint:
    if isinstance(item, str):
        return tokenize(item)
    if isinstance(item, (list, tuple)):
        return tuple(item)
    raise TypeError(f"message must be a string or a list of words, got {type(item).__name__}")

def fingerprint_result(inputs: Sequence[FingerprintInput]) -> FingerprintResult:
    if len(inputs) == 0:
        return Err(EmptyInput("message list is empty"))

    samples = [_as_tokens(x) for x in inputs]
    if len(samples) == 1:
        return Ok(samples[0])

    first = samples[0]
    if any(len(s) != len(first) for s in samples[1:]):
        return Err(LengthMismatch(f"token counts differ: {sorted({len(s) for s in samples})}"))

    # a position keeps its literal only if every sample agrees on it
    fp = tuple(
        word if all(s[i] == word for s in samples) else NONCE_PLACEHOLDER
        for i, word in enumerate(first)
    )
    return Ok(fp)

def generate_fingerprint(inputs: Sequence[FingerprintInput]) -> Fingerprint:
    """
    Fingerprint one message (literal tokens) or several samples of the same
    template (varying positions become `_nonce_`). Items may be raw message
    text or existing fingerprints.

    Raises EmptyInput for no inputs and LengthMismatch when samples disagree
    on token count.
    """
    res = fingerprint_result(inputs)
    if isinstance(res, Err):
        raise res.error
    return res.value

def compare_fingerprint(f1: Sequence[str], f2: Sequence[str]) -> bool:
    if len(f1) != len(f2):
        return False
    for w1, w2 in zip(f1, f2):
        if w1 == NONCE_PLACEHOLDER or w2 == NONCE_PLACEHOLDER:
            continue
        if w1 != w2:
            return False
    return True

def has_nonce(fp: Sequence[str]) -> bool:
    return NONCE_PLACEHOLDER in fp

# ---------------- message info ----------------

def looks_hex_blob(s: str) -> bool:
    t = s.strip().lower()
    return t.startswith("0x") and is_hex(t) and len(t) >= 10

def decode_sign_param(param: str) -> str:
    """personal_sign params often arrive hex-encoded; decode printable UTF-8, else keep as is."""
    if not looks_hex_blob(param):
        return param
    try:
        text = decode_hex(param.strip()).decode("utf-8")
    except ValueError:
        return param
    if not all(c.isprintable() or c.isspace() for c in text):
        return param
    return text

def create_message_info(
    request: SignRequest,
    global_fingerprints: GlobalFingerprints,
    now: Optional[int] = None,
) -> MessageInfo:
    created_at = int(time.time() * 1000) if now is None else now
    domain = request.domain

    samples: List[FingerprintInput] = [request.message]
    prior = global_fingerprints.get(domain)
    if prior is not None:
        samples.append(tuple(prior))

    res = fingerprint_result(samples)
    if isinstance(res, Err) and isinstance(res.error, LengthMismatch):
        # the site changed its template; start over from this message alone
        log.info("template_changed", domain=domain, detail=str(res.error))
        res = fingerprint_result([request.message])
    if isinstance(res, Err):
        raise res.error

    return MessageInfo(
        signer_address=request.signer_address,
        message=request.message,
        created_at=created_at,
        domain=domain,
        display_name=request.display_name,
        fingerprint=res.value,
    )

# ---------------- risk assessment ----------------

PHISHING_TITLE = "Phishing Attack"
REPLAY_TITLE = "Replay Attack"

def _no_domain_finding() -> RiskFinding:
    return RiskFinding("info", PHISHING_TITLE,
                       "This website has the risk of phishing attack. The message you signed does not "
                       "include domain name. Please check this website's domain name.", PHISHING)

def _shared_template_finding(domains: List[str]) -> RiskFinding:
    return RiskFinding("warning", PHISHING_TITLE,
                       "This message is the same as other websites. This website can use your signature "
                       f"to log in to other websites!\n {', '.join(domains)}", PHISHING)

def _victim_finding(domain: str, domains: List[str]) -> RiskFinding:
    return RiskFinding("danger", PHISHING_TITLE,
                       f"This is a phishing website.\n This website's domain is {domain}. You had signed "
                       f"similar messages on {', '.join(domains)}. Please check this website's domain name.",
                       PHISHING)

def _no_nonce_finding() -> RiskFinding:
    return RiskFinding("info", REPLAY_TITLE,
                       "This message has the risk of replay attack, because it does not include nonce.",
                       REPLAY)

def _matching_domains(fp: Sequence[str], table: Mapping[str, Sequence[str]], skip: str) -> List[str]:
    return [d for d, other in table.items() if d != skip and compare_fingerprint(fp, other)]

def _local_fingerprints(entry: Any) -> Mapping[str, Sequence[str]]:
    # accepts AddressHistory, the raw stored mapping, or None
    if isinstance(entry, AddressHistory):
        return entry.local_fingerprints
    if isinstance(entry, Mapping):
        return entry.get("local_fingerprints") or {}
    return {}

def check_message_before_sign(
    info: MessageInfo,
    signing_history: Optional[SigningHistory],
    global_fingerprints: Optional[GlobalFingerprints],
) -> List[RiskFinding]:
    """
    Phishing:
      danger  - this address signed the same template for another domain
      warning - another domain is known to use the same template
      info    - the message does not mention the requesting domain
    Only the most severe phishing finding is reported.

    Replay:
      info    - no `_nonce_` could be inferred for this template
    """
    domain = info.domain
    fp = info.fingerprint
    global_fingerprints = global_fingerprints or {}
    entry = (signing_history or {}).get(info.signer_address)

    phishing: List[RiskFinding] = []

    if domain.lower() not in info.message.lower():
        phishing.append(_no_domain_finding())

    similar = _matching_domains(fp, global_fingerprints, domain)
    if similar:
        phishing.append(_shared_template_finding(similar))

    local = _local_fingerprints(entry)
    victims = _matching_domains(fp, local, domain)
    if victims:
        phishing.append(_victim_finding(domain, victims))

    if domain in local:
        nonce_in_msg = has_nonce(fp)
    elif similar:
        # first match in mapping order; see DESIGN.md
        nonce_in_msg = has_nonce(global_fingerprints[similar[0]])
    else:
        nonce_in_msg = False

    findings: List[RiskFinding] = []
    if phishing:
        findings.append(max(phishing, key=lambda f: SEVERITY_RANK[f.severity]))
    if not nonce_in_msg:
        findings.append(_no_nonce_finding())

    log.debug("message_assessed", domain=domain, address=info.signer_address,
              similar=similar, severities=[f.severity for f in findings])
    return findings

def highest_severity(findings: Sequence[RiskFinding]) -> Optional[str]:
    if not findings:
        return None
    return max((f.severity for f in findings), key=lambda s: SEVERITY_RANK[s])

# ---------------- history store ----------------

def _empty_state() -> Dict[str, Any]:
    return {"global_fingerprints": {}, "signed_messages": {}}

def _is_fingerprint(fp: Any) -> bool:
    return isinstance(fp, list) and all(isinstance(w, str) for w in fp)

def _state_problem(state: Any) -> Optional[str]:
    """Describe the first structural problem in a loaded store, or None."""
    if not isinstance(state, dict):
        return "not a JSON object"
    globals_ = state.get("global_fingerprints", {})
    if not isinstance(globals_, dict):
        return "global_fingerprints is not an object"
    for d, fp in globals_.items():
        if not _is_fingerprint(fp):
            return f"global fingerprint for {d!r} is not a list of strings"
    signed = state.get("signed_messages", {})
    if not isinstance(signed, dict):
        return "signed_messages is not an object"
    for addr, entry in signed.items():
        if not isinstance(entry, dict):
            return f"history for {addr!r} is not an object"
        local_fps = entry.get("local_fingerprints", {})
        local_msgs = entry.get("local_messages", {})
        if not isinstance(local_fps, dict) or not isinstance(local_msgs, dict):
            return f"history for {addr!r} has malformed local_fingerprints/local_messages"
        for d, fp in local_fps.items():
            if not _is_fingerprint(fp):
                return f"local fingerprint for {addr!r} on {d!r} is not a list of strings"
        for key, m in local_msgs.items():
            try:
                MessageInfo.from_dict(m)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                return f"message {key!r} for {addr!r} is malformed: {e!r}"
    return None

class SigningHistoryStore:
    """
    JSON-backed signing history:

        global_fingerprints: {domain: fingerprint}
        signed_messages: {address: {local_fingerprints: {domain: fingerprint},
                                    local_messages: {created_at: message_info}}}

    Writes are last-write-wins per key; nothing is ever evicted.
    """

    def __init__(self, path: Optional[str] = None, state: Optional[Dict[str, Any]] = None):
        self.path = path
        self.state = _empty_state()
        if state is not None:
            self.state.update(copy.deepcopy(state))

    @classmethod
    def load(cls, path: str) -> "SigningHistoryStore":
        if not os.path.isfile(path):
            return cls(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"cannot read signing history {path}: {e}") from e
        problem = _state_problem(state)
        if problem:
            raise StoreError(f"signing history {path} is malformed: {problem}")
        log.debug("store_loaded", path=path, addresses=len(state.get("signed_messages", {})))
        return cls(path, state)

    def save(self) -> None:
        if not self.path:
            return
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, prefix=".sigprint-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.state, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    # reads

    def global_fingerprints(self) -> Dict[str, Fingerprint]:
        return {d: tuple(fp) for d, fp in self.state["global_fingerprints"].items()}

    def history_for(self, address: str) -> Optional[AddressHistory]:
        raw = self.state["signed_messages"].get(address)
        if raw is None:
            return None
        return AddressHistory(
            local_fingerprints={d: tuple(fp) for d, fp in raw.get("local_fingerprints", {}).items()},
            local_messages={k: MessageInfo.from_dict(m) for k, m in raw.get("local_messages", {}).items()},
        )

    def signing_history(self) -> Dict[str, AddressHistory]:
        return {a: self.history_for(a) for a in self.state["signed_messages"]}

    # writes

    def set_message_info(self, info: MessageInfo) -> None:
        entry = self.state["signed_messages"].setdefault(
            info.signer_address, {"local_fingerprints": {}, "local_messages": {}})
        entry.setdefault("local_messages", {})[str(info.created_at)] = info.to_dict()
        entry.setdefault("local_fingerprints", {})[info.domain] = list(info.fingerprint)

    def set_global_fingerprint(self, info: MessageInfo) -> None:
        self.state["global_fingerprints"][info.domain] = list(info.fingerprint)

    def commit(self, info: MessageInfo) -> None:
        """Record an approved signature and refresh the domain's global fingerprint."""
        self.set_message_info(info)
        self.set_global_fingerprint(info)
        self.save()
        log.info("history_committed", domain=info.domain, address=info.signer_address,
                 created_at=info.created_at)

# ---------------- CLI ----------------

def default_store_path() -> str:
    return os.path.join(click.get_app_dir("sigprint"), "history.json")

def _checksum_address(ctx, param, value):
    if value is None:
        return None
    if not is_address(value):
        raise click.BadParameter("expected a 0x-prefixed 20-byte hex address")
    return to_checksum_address(value)

def _open_store(ctx) -> SigningHistoryStore:
    try:
        return SigningHistoryStore.load(ctx.obj["store_path"])
    except StoreError as e:
        raise click.ClickException(str(e))

def _report(info: MessageInfo, findings: List[RiskFinding]) -> Dict[str, Any]:
    return {
        "domain": info.domain,
        "address": info.signer_address,
        "fingerprint": list(info.fingerprint),
        "verdict": highest_severity(findings),
        "findings": [asdict(f) for f in findings],
    }

@click.group(context_settings=dict(help_option_names=["-h","--help"]))
@click.option("--store", "store_path", envvar="SIGPRINT_STORE", type=click.Path(dir_okay=False),
              default=None, help="Signing history JSON file.")
@click.option("--log-level", envvar="SIGPRINT_LOG_LEVEL", default="WARNING",
              type=click.Choice(["DEBUG","INFO","WARNING","ERROR"], case_sensitive=False))
@click.option("--log-format", envvar="SIGPRINT_LOG_FORMAT", default="console",
              type=click.Choice(["console","json"]))
@click.pass_context
def cli(ctx, store_path, log_level, log_format):
    """sigprint — fingerprint sign-in messages before you sign (offline)."""
    configure_logging(log_level, log_format)
    ctx.ensure_object(dict)
    ctx.obj["store_path"] = store_path or default_store_path()

@cli.command("fingerprint")
@click.argument("messages", nargs=-1)
@click.option("--pretty", is_flag=True, help="Human-readable output.")
def fingerprint_cmd(messages, pretty):
    """Fingerprint one message, or infer nonces from several samples."""
    try:
        fp = generate_fingerprint([decode_sign_param(m) for m in messages])
    except FingerprintError as e:
        raise click.ClickException(str(e))
    if pretty:
        click.echo(f"{len(fp)} tokens, nonce: {'yes' if has_nonce(fp) else 'no'}")
        click.echo("".join(fp))
    else:
        click.echo(json.dumps(list(fp)))

@cli.command("compare")
@click.argument("first")
@click.argument("second")
def compare_cmd(first, second):
    """Tell whether two messages share a template."""
    same = compare_fingerprint(generate_fingerprint([decode_sign_param(first)]),
                               generate_fingerprint([decode_sign_param(second)]))
    click.echo("same" if same else "different")

@cli.command("check")
@click.argument("message")
@click.option("--domain", required=True, help="Domain requesting the signature.")
@click.option("--address", required=True, callback=_checksum_address, help="Signer address.")
@click.option("--name", "display_name", default="", help="Display name shown by the site.")
@click.option("--sign", is_flag=True, help="User approved: record this message in the history.")
@click.option("--json", "json_out", type=click.Path(writable=True), default=None, help="Write JSON report.")
@click.option("--pretty", is_flag=True, help="Human-readable output.")
@click.pass_context
def check_cmd(ctx, message, domain, address, display_name, sign, json_out, pretty):
    """
    Assess MESSAGE (plain text or hex personal_sign param) for DOMAIN.
    """
    store = _open_store(ctx)
    req = SignRequest(address, decode_sign_param(message), domain, display_name)
    info = create_message_info(req, store.global_fingerprints())
    findings = check_message_before_sign(info, store.signing_history(), store.global_fingerprints())
    rep = _report(info, findings)

    if pretty:
        verdict = rep["verdict"] or "clean"
        click.echo(f"sigprint — {domain}  verdict {verdict.upper()}")
        for f in findings:
            click.echo(f"   - {f.severity}: {f.title} — {f.body}")
    if json_out:
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump(rep, f, indent=2)
        click.echo(f"Wrote JSON report: {json_out}")
    if not (pretty or json_out):
        click.echo(json.dumps(rep, indent=2))

    if sign:
        try:
            store.commit(info)
        except OSError as e:
            raise click.ClickException(f"cannot write signing history: {e}")
        click.echo(f"Recorded signature for {domain}")

@cli.command("history")
@click.option("--address", required=True, callback=_checksum_address, help="Signer address.")
@click.pass_context
def history_cmd(ctx, address):
    """Show what ADDRESS has signed before."""
    h = _open_store(ctx).history_for(address)
    if h is None:
        click.echo(json.dumps({"local_fingerprints": {}, "local_messages": {}}, indent=2))
        return
    click.echo(json.dumps({
        "local_fingerprints": {d: list(fp) for d, fp in h.local_fingerprints.items()},
        "local_messages": {k: m.to_dict() for k, m in h.local_messages.items()},
    }, indent=2))

if __name__ == "__main__":
    cli()
