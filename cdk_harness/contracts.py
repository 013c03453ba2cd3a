"""
Ballot contract artifact: load a compiled JSON artifact or compile the bundled solidity/Ballot.sol.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import solcx

from cdk_harness import console
from cdk_harness.config import HarnessConfig
from cdk_harness.errors import ArtifactError

BALLOT_CONTRACT_NAME = "Ballot"
BALLOT_PROPOSALS = ("Proposal A", "Proposal B", "Proposal C")
DEFAULT_BALLOT_ARTIFACT = Path(__file__).resolve().parent / "solidity" / "Ballot.json"


def encode_bytes32_string(text: str) -> bytes:
    """UTF-8 text right-padded with zero bytes to 32 bytes; at most 31 bytes of text."""
    raw = text.encode("utf-8")
    if len(raw) > 31:
        raise ValueError(f"bytes32 string must be less than 32 bytes: {text!r}")
    return raw.ljust(32, b"\x00")


def decode_bytes32_string(value: Union[bytes, str]) -> str:
    if isinstance(value, str):
        value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(value) != 32:
        raise ValueError(f"invalid bytes32 value: {len(value)} bytes")
    return bytes(value).rstrip(b"\x00").decode("utf-8")


def _bytecode_of(entry: Any) -> Optional[str]:
    if isinstance(entry, dict):
        entry = entry.get("object")
    if isinstance(entry, str) and entry:
        return entry if entry.startswith("0x") else "0x" + entry
    return None


def load_artifact(path: Union[str, Path]) -> Tuple[List[Dict[str, Any]], str]:
    """
    Read abi + creation bytecode from a Foundry (bytecode.object), Hardhat
    (bytecode string) or solc standard-json (evm.bytecode.object) artifact.
    """
    path = Path(path)
    if not path.exists():
        raise ArtifactError(f"Artifact not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as e:
        raise ArtifactError(f"Artifact {path} is not valid JSON: {e}")

    abi = data.get("abi")
    bytecode = _bytecode_of(data.get("bytecode"))
    if bytecode is None and isinstance(data.get("evm"), dict):
        bytecode = _bytecode_of(data["evm"].get("bytecode"))

    if not isinstance(abi, list):
        raise ArtifactError(f"Artifact {path} has no 'abi' list")
    if bytecode is None or bytecode == "0x":
        raise ArtifactError(f"Artifact {path} has no creation bytecode. Is the contract abstract or not compiled?")
    return abi, bytecode


def compile_contract(source: Path, contract_name: str, solc_version: str) -> Tuple[List[Dict[str, Any]], str]:
    if not source.exists():
        raise ArtifactError(f"Contract source not found: {source}")

    installed = {str(v) for v in solcx.get_installed_solc_versions()}
    if solc_version not in installed:
        console.info(f"Installing solc {solc_version} (py-solc-x)...")
        solcx.install_solc(solc_version)

    console.info(f"Compiling {source.name} with solc {solc_version}")
    try:
        compiled = solcx.compile_files([str(source)], output_values=["abi", "bin"], solc_version=solc_version)
    except solcx.exceptions.SolcError as e:
        raise ArtifactError(f"Compilation of {source} failed: {e}")

    for key, output in compiled.items():
        if key.split(":")[-1] == contract_name:
            return output["abi"], "0x" + output["bin"]
    raise ArtifactError(f"Contract {contract_name} not found in compiler output for {source}")


def load_ballot(cfg: HarnessConfig) -> Tuple[List[Dict[str, Any]], str]:
    """BALLOT_ARTIFACT if set, else the bundled solidity/Ballot.json if present, else compile the bundled source."""
    if cfg.ballot_artifact:
        console.info(f"Loading Ballot artifact from {cfg.ballot_artifact}")
        return load_artifact(cfg.ballot_artifact)
    if DEFAULT_BALLOT_ARTIFACT.exists():
        console.info(f"Loading Ballot artifact from {DEFAULT_BALLOT_ARTIFACT}")
        return load_artifact(DEFAULT_BALLOT_ARTIFACT)
    return compile_contract(cfg.ballot_source, BALLOT_CONTRACT_NAME, cfg.solc_version)
