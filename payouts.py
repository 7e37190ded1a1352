# payouts.py
from __future__ import annotations
import json
from typing import List, Optional, Tuple, Union

import base58 as _b58

from config import settings
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

# ---------- SPL helpers ----------
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

# =========================================================
# Helpers & config
# =========================================================
def _require_token_mint() -> None:
    if not settings.TOKEN_MINT:
        raise RuntimeError("TOKEN_MINT is not set. SPL payouts require a token mint.")


def _token_mint() -> Pubkey:
    _require_token_mint()
    return to_public_key(settings.TOKEN_MINT)


def to_public_key(addr: Optional[Union[str, Pubkey, bytes, bytearray]]) -> Pubkey:
    if addr is None or addr == "":
        raise ValueError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    s = str(addr).strip()
    try:
        return Pubkey.from_string(s)
    except ValueError:
        raw = _b58.b58decode(s)
        if len(raw) != 32:
            raise ValueError(f"Decoded key length != 32 ({len(raw)})")
        return Pubkey.from_bytes(raw)


def keypair_from_secret(secret: str) -> Keypair:
    """
    Accepts a base58 secret (64-byte keypair or 32-byte seed) or a JSON byte
    array as exported by the CLI wallets.
    """
    if not secret:
        raise ValueError("Empty secret key provided")
    s = secret.strip()
    if s.startswith("["):
        raw = bytes(json.loads(s))
    else:
        raw = _b58.b58decode(s)
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def _assert_owner_matches(treasury: Pubkey, kp: Keypair) -> None:
    if str(treasury) != str(kp.pubkey()):
        raise RuntimeError(
            "TREASURY signer does not match configured treasury public key. "
            f"({treasury} != {kp.pubkey()})"
        )


# ---------------- ATA ensure ----------------
async def _ensure_ata_ixs(
    client: AsyncClient,
    owner: Pubkey,
    payer: Pubkey,
) -> Tuple[Pubkey, List]:
    """Return owner's ATA plus the create instruction when it does not exist yet."""
    mint_pk = _token_mint()
    ata = get_associated_token_address(owner, mint_pk)

    resp = await client.get_account_info(ata, commitment=Confirmed)
    ixs: List = []
    if resp.value is None:
        ixs.append(create_associated_token_account(payer=payer, owner=owner, mint=mint_pk))
    return ata, ixs


# ---------------- Core SPL transfer ----------------
async def _send_spl_from_treasury(
    client: AsyncClient,
    treasury_kp: Keypair,
    treasury: Pubkey,
    winner_wallet: Pubkey,
    amount_base_units: int,
) -> str:
    if amount_base_units <= 0:
        raise ValueError("amount_base_units must be > 0")

    mint_pk = _token_mint()

    # Ensure recipient ATA (treasury pays fees)
    winner_ata, ixs = await _ensure_ata_ixs(client, winner_wallet, payer=treasury)
    treasury_ata = get_associated_token_address(treasury, mint_pk)

    ixs.append(
        transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=treasury_ata,
                mint=mint_pk,
                dest=winner_ata,
                owner=treasury,
                amount=amount_base_units,
                decimals=int(settings.TOKEN_DECIMALS),
            )
        )
    )

    blockhash = (await client.get_latest_blockhash()).value.blockhash
    msg = Message.new_with_blockhash(ixs, treasury, blockhash)
    tx = Transaction([treasury_kp], msg, blockhash)

    try:
        resp = await client.send_transaction(
            tx, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
        )
    except Exception:
        # one retry with skip_preflight=True (network hiccup / compute jitter)
        resp = await client.send_transaction(
            tx, opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed)
        )

    sig = resp.value

    # best-effort confirm
    try:
        await client.confirm_transaction(sig, commitment=Confirmed)
    except Exception:
        return str(sig)
    return str(sig)


# ---------------- Public payout API ----------------
async def pay_raffle_winner(winner_pubkey_str: str, amount_base_units: int) -> str:
    """Send a raffle prize from the treasury; returns the transaction signature."""
    if not settings.TREASURY_SECRET:
        raise RuntimeError("TREASURY_SECRET not set.")
    kp = keypair_from_secret(settings.TREASURY_SECRET)
    treasury = to_public_key(settings.TREASURY_PUBKEY or kp.pubkey())
    _assert_owner_matches(treasury, kp)

    async with AsyncClient(settings.RPC_URL, commitment=Confirmed) as client:
        return await _send_spl_from_treasury(
            client=client,
            treasury_kp=kp,
            treasury=treasury,
            winner_wallet=to_public_key(winner_pubkey_str),
            amount_base_units=amount_base_units,
        )
