from __future__ import annotations

from dataclasses import dataclass
import os

from rfq_maker.errors import ConfigurationError

DEFAULT_RPC_HOST_TEMPLATE = "base-sepolia.g.alchemy.com/v2/{key}"
DEFAULT_CHAIN_ID = 84532
BACKENDS = ("web3", "cast")


@dataclass(frozen=True)
class MakerConfig:
    private_key: str
    rpc_url: str
    ws_url: str
    contract_address: str
    events_file: str
    state_file: str
    chain_id: int

    broadcast_backend: str
    cast_binary: str

    poll_interval_seconds: float
    base_gas_price_wei: int
    max_retries: int
    retry_settle_seconds: float
    tx_timeout_seconds: float

    log_level: str


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _parse_int(raw: str, default: int) -> int:
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_float(raw: str, default: float) -> float:
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def build_endpoints(api_key: str, host_template: str = DEFAULT_RPC_HOST_TEMPLATE) -> tuple[str, str]:
    host = host_template.format(key=api_key)
    return f"https://{host}", f"wss://{host}"


def load_config() -> MakerConfig:
    """Read settings from the environment.

    Every required value is checked before returning so a misconfigured process
    fails once, listing everything that is missing.
    """
    private_key = _env("PRIVATE_KEY")
    api_key = _env("ALCHEMY_API_KEY")
    contract_address = _env("CONTRACT_ADDRESS")
    events_file = _env("EVENTS_FILE", "./events.jsonl")
    state_file = _env("STATE_FILE", "./processed_requests.json")

    missing = [
        name
        for name, value in (
            ("PRIVATE_KEY", private_key),
            ("ALCHEMY_API_KEY", api_key),
            ("CONTRACT_ADDRESS", contract_address),
            ("EVENTS_FILE", events_file),
            ("STATE_FILE", state_file),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(missing)

    backend = _env("BROADCAST_BACKEND", "web3").lower()
    if backend not in BACKENDS:
        raise ConfigurationError(message=f"unsupported BROADCAST_BACKEND={backend!r}")

    rpc_url, ws_url = build_endpoints(api_key, _env("RPC_HOST_TEMPLATE", DEFAULT_RPC_HOST_TEMPLATE))
    return MakerConfig(
        private_key=private_key,
        rpc_url=rpc_url,
        ws_url=ws_url,
        contract_address=contract_address,
        events_file=events_file,
        state_file=state_file,
        chain_id=_parse_int(_env("CHAIN_ID"), DEFAULT_CHAIN_ID),
        broadcast_backend=backend,
        cast_binary=_env("CAST_BIN", "cast"),
        poll_interval_seconds=max(0.05, _parse_float(_env("POLL_INTERVAL_SECONDS"), 1.0)),
        base_gas_price_wei=20_000_000_000,
        max_retries=3,
        retry_settle_seconds=2.0,
        tx_timeout_seconds=60.0,
        log_level=_env("LOG_LEVEL", "INFO").upper() or "INFO",
    )
