"""
Environment configuration for the stage scripts.

Values come from the process environment, after a `.env` file (python-dotenv) has
been merged in. Only the RPC URL is mandatory, and only once a stage is about to
talk to the node. A missing PRIVATE_KEY is not an error: the harness falls back to
the accounts the node itself manages.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from cdk_harness import console
from cdk_harness.errors import ConfigError

DEFAULT_SOLC_VERSION = "0.8.29"
DEFAULT_RESULTS_DIR = "./results"
DEFAULT_BALLOT_SOURCE = Path(__file__).resolve().parent / "solidity" / "Ballot.sol"


@dataclass
class HarnessConfig:
    rpc_url: Optional[str]
    chain_id: Optional[int]
    private_key: Optional[str]
    network_name: str = "default"
    results_dir: Path = Path(DEFAULT_RESULTS_DIR)
    ballot_artifact: Optional[Path] = None
    ballot_source: Path = DEFAULT_BALLOT_SOURCE
    solc_version: str = DEFAULT_SOLC_VERSION
    fund_amount_eth: Decimal = Decimal("0.05")
    deploy_confirmations: int = 2
    tx_confirmations: int = 1
    receipt_timeout: int = 600
    poll_interval: float = 2.0
    poa_middleware: bool = True

    @property
    def results_file(self) -> Path:
        return self.results_dir / "results.json"

    def require_rpc_url(self) -> str:
        if not self.rpc_url:
            raise ConfigError(
                "CDK_ERIGON_RPC_URL (or RPC_URL) is not set. "
                "Point it at the node under test before running a stage."
            )
        return self.rpc_url


def _int_env(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip(), 0)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(env_file: Optional[Union[str, Path]] = None) -> HarnessConfig:
    """Merge `.env` into the environment and build a HarnessConfig from it."""
    load_dotenv(dotenv_path=env_file)

    rpc_url = os.getenv("CDK_ERIGON_RPC_URL") or os.getenv("RPC_URL")
    network_name = os.getenv("NETWORK_NAME") or os.getenv("HARDHAT_NETWORK") or "default"

    raw_fund = os.getenv("FUND_AMOUNT_ETH", "0.05")
    try:
        fund_amount = Decimal(raw_fund)
    except InvalidOperation:
        raise ConfigError(f"FUND_AMOUNT_ETH must be a decimal ether amount, got {raw_fund!r}")
    if fund_amount < 0:
        raise ConfigError("FUND_AMOUNT_ETH must not be negative")

    artifact = os.getenv("BALLOT_ARTIFACT")
    source = os.getenv("BALLOT_SOURCE")

    cfg = HarnessConfig(
        rpc_url=rpc_url.strip() if rpc_url else None,
        chain_id=_int_env("CHAIN_ID", None),
        private_key=(os.getenv("PRIVATE_KEY") or "").strip() or None,
        network_name=network_name,
        results_dir=Path(os.getenv("RESULTS_DIR", DEFAULT_RESULTS_DIR)),
        ballot_artifact=Path(artifact) if artifact else None,
        ballot_source=Path(source) if source else DEFAULT_BALLOT_SOURCE,
        solc_version=os.getenv("SOLC_VERSION", DEFAULT_SOLC_VERSION),
        fund_amount_eth=fund_amount,
        deploy_confirmations=_int_env("DEPLOY_CONFIRMATIONS", 2),
        tx_confirmations=_int_env("TX_CONFIRMATIONS", 1),
        receipt_timeout=_int_env("RECEIPT_TIMEOUT", 600),
        poll_interval=_float_env("TX_POLL_INTERVAL", 2.0),
        poa_middleware=_bool_env("POA_MIDDLEWARE", True),
    )

    if cfg.deploy_confirmations < 1 or cfg.tx_confirmations < 1:
        raise ConfigError("DEPLOY_CONFIRMATIONS and TX_CONFIRMATIONS must be >= 1")
    return cfg


def connect(cfg: HarnessConfig) -> Web3:
    """Open the HTTP provider described by cfg and sanity-check the chain id."""
    url = cfg.require_rpc_url()
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 60}))
    if cfg.poa_middleware:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    if not w3.is_connected():
        raise ConfigError(f"Web3 not connected. Check RPC URL {url}")

    node_chain_id = w3.eth.chain_id
    if cfg.chain_id is None:
        console.warn(f"CHAIN_ID not set; using node chainId={node_chain_id}")
        cfg.chain_id = node_chain_id
    elif cfg.chain_id != node_chain_id:
        console.warn(f"CHAIN_ID={cfg.chain_id} but node reports chainId={node_chain_id}")

    console.info(f"Connected to {url} chainId={node_chain_id} network={cfg.network_name}")
    return w3
