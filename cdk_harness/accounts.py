"""
Test account provisioning.

One operator-supplied private key becomes the chairperson; four more keys are
derived from it by adding 1, 2, 3, 4. The derived keys are trivially guessable and
are for throwaway test networks ONLY.

If the base key is missing or malformed the harness degrades to the accounts the
node manages itself (eth_accounts) instead of failing at startup.
"""

from typing import List, Optional, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_keys.constants import SECPK1_N
from eth_utils import to_checksum_address
from web3 import Web3

from cdk_harness import console

EXPECTED_ACCOUNT_COUNT = 5


class Signer:
    """An account that can originate transactions: a local key or a node-managed address."""

    def __init__(self, address: str, account: Optional[LocalAccount] = None, label: str = ""):
        self.address = to_checksum_address(address)
        self.account = account
        self.label = label

    @classmethod
    def from_key(cls, key_hex: str, label: str = "") -> "Signer":
        acct = Account.from_key(key_hex)
        return cls(acct.address, acct, label)

    @property
    def is_local(self) -> bool:
        return self.account is not None

    def __repr__(self):
        kind = "local" if self.is_local else "node"
        return f"Signer({self.label or '?'} {self.address} {kind})"


def normalize_key(key: str) -> Optional[str]:
    """Return the key as 0x + 64 lowercase hex chars, or None if it is not a usable secp256k1 key."""
    if not key:
        return None
    key = key.strip()
    key_hex = key if key.startswith(("0x", "0X")) else f"0x{key}"
    if len(key_hex) != 66:
        return None
    try:
        value = int(key_hex, 16)
    except ValueError:
        return None
    if value == 0 or value >= SECPK1_N:
        return None
    return "0x" + key_hex[2:].lower()


def derive_test_keys(base_key: Optional[str], count: int = EXPECTED_ACCOUNT_COUNT) -> Optional[List[str]]:
    """
    Build `count` private keys from base_key: [k, k+1, ..., k+count-1].

    Returns None when base_key is absent or invalid (caller should fall back to
    node accounts). Stops early, with a warning, if k+i leaves the secp256k1 key
    space; the shorter list is still returned.
    """
    if not base_key:
        console.error("PRIVATE_KEY is not set. It is required for the primary account (chairperson).")
        return None

    primary = normalize_key(base_key)
    if primary is None:
        console.error(
            "PRIVATE_KEY must be a 32-byte hex string, optionally prefixed with 0x "
            "(64 hex chars, or 66 with 0x), and a valid secp256k1 scalar."
        )
        return None

    keys = [primary]
    console.info(f"Using primary private key for chairperson: {Account.from_key(primary).address}")
    console.info(f"Generating {count - 1} additional test accounts by incrementing the primary private key.")
    console.warn("This method of key generation is insecure and for local testing ONLY.")

    current = int(primary, 16)
    for i in range(1, count):
        current += 1
        if current >= SECPK1_N:
            console.error(f"Incrementing private key overflowed the key space at derived key {i}. Cannot generate more keys this way.")
            break
        derived = "0x" + format(current, "064x")
        keys.append(derived)
        console.info(f"  Added derived account {i}: {Account.from_key(derived).address} (PK derived by increment)")

    if len(keys) < count:
        console.warn(f"Only {len(keys)} account(s) configured. Stage 3 tests expect {count}.")
    return keys


def build_signers(w3: Web3, keys: Optional[Sequence[str]], labels: Sequence[str] = ()) -> List[Signer]:
    """Signers for the provisioned keys, or for the node's own accounts when keys is None."""
    labels = list(labels)

    def label_for(i):
        return labels[i] if i < len(labels) else f"Account {i}"

    if keys:
        return [Signer.from_key(k, label_for(i)) for i, k in enumerate(keys)]

    console.warn("No usable PRIVATE_KEY; falling back to node-managed accounts (eth_accounts).")
    try:
        node_accounts = w3.eth.accounts
    except Exception as e:
        console.warn(f"Could not list node accounts: {e}")
        node_accounts = []
    return [Signer(addr, None, label_for(i)) for i, addr in enumerate(node_accounts)]


def primary_signer(w3: Web3, base_key: Optional[str], label: str = "") -> Optional[Signer]:
    """The operator's own account (no derivation), or the node's first account."""
    key = normalize_key(base_key) if base_key else None
    if key:
        return Signer.from_key(key, label)
    if base_key:
        console.error("PRIVATE_KEY is set but is not a valid 32-byte secp256k1 key.")
    signers = build_signers(w3, None, [label])
    return signers[0] if signers else None
