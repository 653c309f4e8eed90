"""
Solana ledger client.

Covers the three things the pipeline needs from the ledger:

- reading the identifier tree's mint counter and deriving leaf asset IDs
  (compressed NFTs minted through Bubblegum);
- submitting a ``mint_v1`` instruction and waiting for the configured
  commitment;
- fetching a confirmed transaction so a purchase claim can be checked.

All RPC traffic goes through one ``requests.Session`` owned by the client.
"""

import base64
import hashlib
import json
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
import structlog
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from proofmint import config
from proofmint.core.errors import (
    ConfirmationTimeoutError, LedgerError, MalformedAddressError, MalformedKeyError,
)

logger = structlog.get_logger()

BUBBLEGUM_PROGRAM_ID = Pubkey.from_string("BGUMAp9Gq7iTEuizy4pqaxsTyUCBK68MDfK752saRPUY")
NOOP_PROGRAM_ID = Pubkey.from_string("noopb9bkMVfRPU8AsbpTUg8AQkHtKwMYZiFUjNRtMmV")
COMPRESSION_PROGRAM_ID = Pubkey.from_string("cmtDvXumGCrqC1Age74AVPhSRVXJMd8PJS91L8KbNCK")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

MINT_V1_DISCRIMINATOR = hashlib.sha256(b"global:mint_v1").digest()[:8]

# TreeConfig account: discriminator(8) tree_creator(32) tree_delegate(32) total_mint_capacity(8) num_minted(8)
TREE_CONFIG_NUM_MINTED_OFFSET = 8 + 32 + 32 + 8

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}

@dataclass
class MintReceipt:
    tx_signature: str
    post_counter: int

@dataclass
class LedgerTransaction:
    """The parts of a confirmed transaction a purchase check looks at."""
    signature: str
    account_keys: List[str]
    pre_balances: List[int]
    post_balances: List[int]
    err: Optional[Any] = None
    slot: Optional[int] = None

    @property
    def first_signer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def succeeded(self) -> bool:
        return self.err is None

    def balance_change(self, address: str) -> int:
        """post - pre balance of ``address``; 0 if it is not part of the transaction."""
        try:
            index = self.account_keys.index(address)
        except ValueError:
            return 0
        if index >= len(self.pre_balances) or index >= len(self.post_balances):
            return 0
        return self.post_balances[index] - self.pre_balances[index]

@dataclass
class TreeConfig:
    tree_address: str
    num_minted: int
    raw: bytes = field(default=b"", repr=False)

def parse_address(address: str) -> Pubkey:
    """Parse a base58 address; malformed input is fatal and never retried."""
    try:
        return Pubkey.from_string(address)
    except Exception:
        raise MalformedAddressError(f"Malformed ledger address: {address!r}")

def load_keypair(secret: str) -> Keypair:
    """Load a signing key given as a JSON array of 64 byte values."""
    try:
        values = json.loads(secret)
        return Keypair.from_bytes(bytes(values))
    except Exception:
        raise MalformedKeyError("Signing key must be a JSON array of 64 byte values")

def derive_tree_config_address(tree_address: str) -> str:
    tree = parse_address(tree_address)
    pda, _bump = Pubkey.find_program_address([bytes(tree)], BUBBLEGUM_PROGRAM_ID)
    return str(pda)

def derive_identifier(tree_address: str, leaf_index: int) -> str:
    """
    Asset ID of the leaf at ``leaf_index`` in ``tree_address``.

    Pure and deterministic: the program-derived address of
    ("asset", tree, leaf_index as u64 LE) under the Bubblegum program.
    """
    if leaf_index < 0:
        raise ValueError("leaf_index must be non-negative")
    tree = parse_address(tree_address)
    pda, _bump = Pubkey.find_program_address(
        [b"asset", bytes(tree), struct.pack("<Q", leaf_index)],
        BUBBLEGUM_PROGRAM_ID,
    )
    return str(pda)

def parse_tree_config(tree_address: str, data: bytes) -> TreeConfig:
    end = TREE_CONFIG_NUM_MINTED_OFFSET + 8
    if len(data) < end:
        raise LedgerError(f"Tree config account too short ({len(data)} bytes)")
    (num_minted,) = struct.unpack_from("<Q", data, TREE_CONFIG_NUM_MINTED_OFFSET)
    return TreeConfig(tree_address=tree_address, num_minted=num_minted, raw=data)

def _borsh_string(value: str) -> bytes:
    encoded = value.encode("utf-8")
    return struct.pack("<I", len(encoded)) + encoded

def encode_metadata_args(name: str, symbol: str, uri: str) -> bytes:
    """Borsh encoding of Bubblegum MetadataArgs for a royalty-free, creator-less leaf."""
    return b"".join([
        _borsh_string(name),
        _borsh_string(symbol),
        _borsh_string(uri),
        struct.pack("<H", 0),   # seller_fee_basis_points
        b"\x00",                # primary_sale_happened
        b"\x01",                # is_mutable
        b"\x00",                # edition_nonce: None
        b"\x01\x00",            # token_standard: Some(NonFungible)
        b"\x00",                # collection: None
        b"\x00",                # uses: None
        b"\x00",                # token_program_version: Original
        struct.pack("<I", 0),   # creators: []
    ])

def build_mint_instruction(payer: Pubkey, tree: Pubkey, owner: Pubkey,
                           name: str, symbol: str, uri: str) -> Instruction:
    tree_config, _bump = Pubkey.find_program_address([bytes(tree)], BUBBLEGUM_PROGRAM_ID)
    accounts = [
        AccountMeta(tree_config, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(owner, is_signer=False, is_writable=False),  # leaf delegate
        AccountMeta(tree, is_signer=False, is_writable=True),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(payer, is_signer=True, is_writable=False),   # tree creator/delegate
        AccountMeta(NOOP_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(COMPRESSION_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = MINT_V1_DISCRIMINATOR + encode_metadata_args(name, symbol, uri)
    return Instruction(BUBBLEGUM_PROGRAM_ID, data, accounts)

class LedgerClient:
    """JSON-RPC client for one RPC endpoint, tree and signing key."""

    def __init__(self, rpc_url: str = config.SOLANA_RPC_URL,
                 tree_address: str = config.MERKLE_TREE_ADDRESS,
                 private_key: str = config.SOLANA_PRIVATE_KEY,
                 commitment: str = config.LEDGER_COMMITMENT,
                 confirm_timeout: float = config.CONFIRM_TIMEOUT_SECONDS,
                 poll_interval: float = config.CONFIRM_POLL_INTERVAL_SECONDS,
                 session: Optional[requests.Session] = None):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.rpc_url = rpc_url
        self.tree_address = tree_address
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._private_key = private_key
        self._payer = None
        self._request_id = 0
        self.session = session or self._create_session()

        logger.info("Ledger client initialized", rpc_url=rpc_url, tree_address=tree_address,
                    commitment=commitment)

    def _create_session(self) -> requests.Session:
        """HTTP session with retry on throttling and server errors."""
        session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @property
    def payer(self) -> Keypair:
        if self._payer is None:
            self._payer = load_keypair(self._private_key)
        return self._payer

    def _rpc(self, method: str, params: list) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=body, timeout=30)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Ledger RPC transport error", method=method, error=str(e))
            raise LedgerError(f"{method} failed: {e}")
        except ValueError as e:
            logger.error("Ledger RPC returned invalid JSON", method=method, error=str(e))
            raise LedgerError(f"{method} returned invalid JSON")

        if payload.get("error"):
            error = payload["error"]
            logger.error("Ledger RPC error", method=method, error=error)
            raise LedgerError(f"{method} failed: {error.get('message', error)}")
        return payload.get("result")

    # Identifier tree

    def fetch_tree_config(self, tree_address: Optional[str] = None) -> TreeConfig:
        tree_address = tree_address or self.tree_address
        config_address = derive_tree_config_address(tree_address)
        result = self._rpc("getAccountInfo", [
            config_address, {"encoding": "base64", "commitment": self.commitment},
        ])
        value = (result or {}).get("value")
        if not value:
            raise LedgerError(f"Tree config account not found for tree {tree_address}")
        data = base64.b64decode(value["data"][0])
        return parse_tree_config(tree_address, data)

    def fetch_counter(self, tree_address: Optional[str] = None) -> int:
        """Number of leaves minted so far, i.e. the index the next mint will occupy."""
        return self.fetch_tree_config(tree_address).num_minted

    def derive_identifier(self, leaf_index: int, tree_address: Optional[str] = None) -> str:
        return derive_identifier(tree_address or self.tree_address, leaf_index)

    # Minting

    def latest_blockhash(self) -> Hash:
        result = self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    def mint(self, owner_address: str, metadata_uri: str, name: str,
             symbol: str = config.PROOF_SYMBOL) -> MintReceipt:
        """
        Mint one leaf owned by ``owner_address`` and block until it is confirmed.

        The returned post-mint counter is read after confirmation; the leaf this
        call created is ``post_counter - 1`` unless another minter interleaved.
        """
        owner = parse_address(owner_address)
        tree = parse_address(self.tree_address)
        payer = self.payer

        instruction = build_mint_instruction(payer.pubkey(), tree, owner, name, symbol, metadata_uri)
        blockhash = self.latest_blockhash()
        message = Message.new_with_blockhash([instruction], payer.pubkey(), blockhash)
        transaction = Transaction([payer], message, blockhash)

        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        signature = self._rpc("sendTransaction", [
            encoded, {"encoding": "base64", "preflightCommitment": self.commitment},
        ])
        logger.info("Mint transaction submitted", tx_signature=signature, owner=owner_address)

        try:
            self.wait_for_confirmation(signature)
        except LedgerError as e:
            # The transaction may still land; a retry of this job would mint a second leaf.
            logger.warning("Mint submitted but confirmation failed; retry may double-mint",
                           tx_signature=signature, error=str(e))
            raise

        post_counter = self.fetch_counter()
        logger.info("Mint transaction confirmed", tx_signature=signature, post_counter=post_counter)
        return MintReceipt(tx_signature=signature, post_counter=post_counter)

    def wait_for_confirmation(self, signature: str):
        """Poll signature status until the configured commitment or the timeout."""
        required = COMMITMENT_LEVELS[self.commitment]
        deadline = time.monotonic() + self.confirm_timeout

        while True:
            result = self._rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": False}])
            status = ((result or {}).get("value") or [None])[0]
            if status:
                if status.get("err"):
                    raise LedgerError(f"Transaction {signature} failed: {status['err']}")
                level = COMMITMENT_LEVELS.get(status.get("confirmationStatus") or "processed", 0)
                if level >= required:
                    return
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Transaction {signature} not {self.commitment} after {self.confirm_timeout}s"
                )
            time.sleep(self.poll_interval)

    # Purchases

    def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        """Confirmed transaction by signature, or None if the ledger does not know it."""
        result = self._rpc("getTransaction", [
            signature,
            {"encoding": "json", "commitment": self.commitment, "maxSupportedTransactionVersion": 0},
        ])
        if not result:
            return None
        return transaction_from_rpc(signature, result)

def transaction_from_rpc(signature: str, result: Dict[str, Any]) -> LedgerTransaction:
    meta = result.get("meta") or {}
    message = (result.get("transaction") or {}).get("message") or {}
    account_keys = list(message.get("accountKeys") or [])
    # Versioned transactions append lookup-table accounts after the static keys.
    loaded = meta.get("loadedAddresses") or {}
    account_keys += list(loaded.get("writable") or []) + list(loaded.get("readonly") or [])
    return LedgerTransaction(
        signature=signature,
        account_keys=account_keys,
        pre_balances=list(meta.get("preBalances") or []),
        post_balances=list(meta.get("postBalances") or []),
        err=meta.get("err"),
        slot=result.get("slot"),
    )
