"""
Solana Gateway

Async RPC access and SPL instruction builders used by the Solana rescue.

Features:
- solana-py AsyncClient with confirmed commitment
- Legacy SPL Token and Token-2022 account listing
- Fee estimation through getFeeForMessage
- Simulate before send
"""

from typing import Dict, List, Optional, Sequence

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

TOKEN_ACCOUNT_SIZE = 165
DEFAULT_SIGNATURE_FEE = 5000

# SPL Token instruction tags
_CLOSE_ACCOUNT = 9
_TRANSFER_CHECKED = 12
_CREATE_IDEMPOTENT = 1


# ----------------------------------------------------------------------
# Instruction builders
# ----------------------------------------------------------------------

def get_associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def create_ata_idempotent_ix(payer: Pubkey, ata: Pubkey, owner: Pubkey, mint: Pubkey,
                             token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([_CREATE_IDEMPOTENT]), accounts)


def transfer_checked_ix(source: Pubkey, mint: Pubkey, destination: Pubkey, owner: Pubkey,
                        amount: int, decimals: int, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = bytes([_TRANSFER_CHECKED]) + int(amount).to_bytes(8, 'little') + bytes([decimals])
    accounts = [
        AccountMeta(source, is_signer=False, is_writable=True),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(destination, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ]
    return Instruction(token_program, data, accounts)


def close_account_ix(account: Pubkey, destination: Pubkey, authority: Pubkey,
                     token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    accounts = [
        AccountMeta(account, is_signer=False, is_writable=True),
        AccountMeta(destination, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
    ]
    return Instruction(token_program, bytes([_CLOSE_ACCOUNT]), accounts)


def sol_transfer_ix(source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=int(lamports)))


def with_priority(instructions: Sequence[Instruction], cu_limit: int, cu_price_micro_lamports: int) -> List[Instruction]:
    """Prepend compute budget instructions (price only when positive)"""
    budget = [set_compute_unit_limit(int(cu_limit))]
    if cu_price_micro_lamports and cu_price_micro_lamports > 0:
        budget.append(set_compute_unit_price(int(cu_price_micro_lamports)))
    return budget + list(instructions)


# ----------------------------------------------------------------------
# RPC access
# ----------------------------------------------------------------------

class SolanaGateway:
    """
    One Solana RPC endpoint

    All balances are lamports, all token amounts raw units.
    """

    def __init__(self, rpc_url: str, timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout)

    async def is_reachable(self) -> bool:
        """True when the endpoint answers getLatestBlockhash"""
        try:
            resp = await self.client.get_latest_blockhash()
            return resp.value is not None
        except Exception as e:
            logger.debug(f"Solana RPC health check failed for {self.rpc_url}: {e}")
            return False

    async def get_balance(self, pubkey: Pubkey) -> int:
        resp = await self.client.get_balance(pubkey)
        return int(resp.value)

    async def rent_exemption(self, size: int = TOKEN_ACCOUNT_SIZE) -> int:
        resp = await self.client.get_minimum_balance_for_rent_exemption(size)
        return int(resp.value)

    async def account_exists(self, pubkey: Pubkey) -> bool:
        resp = await self.client.get_account_info(pubkey)
        return resp.value is not None

    @staticmethod
    def _parse_token_account(address: Pubkey, parsed, program_id: Pubkey) -> Optional[Dict]:
        info = (parsed or {}).get('info') if isinstance(parsed, dict) else None
        if not info:
            return None
        amount = info.get('tokenAmount') or {}
        return {
            'address': address,
            'mint': Pubkey.from_string(info['mint']),
            'amount': int(amount.get('amount', 0)),
            'decimals': int(amount.get('decimals', 0)),
            'program_id': program_id,
        }

    async def get_token_accounts(self, owner: Pubkey, program_id: Pubkey) -> List[Dict]:
        """
        Token accounts owned by owner under one token program

        Returns:
            [{'address', 'mint', 'amount', 'decimals', 'program_id'}]
        """
        resp = await self.client.get_token_accounts_by_owner_json_parsed(
            owner, TokenAccountOpts(program_id=program_id)
        )
        accounts = []
        for keyed in resp.value or []:
            parsed = self._parse_token_account(keyed.pubkey, keyed.account.data.parsed, program_id)
            if parsed is not None:
                accounts.append(parsed)
        return accounts

    async def get_token_account(self, address: Pubkey, program_id: Pubkey) -> Optional[Dict]:
        """Live re-read of one token account (None when closed)"""
        resp = await self.client.get_account_info_json_parsed(address)
        if resp.value is None:
            return None
        return self._parse_token_account(address, getattr(resp.value.data, 'parsed', None), program_id)

    async def _message(self, instructions: Sequence[Instruction], payer: Pubkey) -> Message:
        blockhash = (await self.client.get_latest_blockhash()).value.blockhash
        return Message.new_with_blockhash(list(instructions), payer, blockhash)

    async def fee_for(self, instructions: Sequence[Instruction], payer: Pubkey) -> int:
        """Fee in lamports for a message with these instructions"""
        message = await self._message(instructions, payer)
        resp = await self.client.get_fee_for_message(message)
        return int(resp.value) if resp.value is not None else DEFAULT_SIGNATURE_FEE

    async def _signed(self, instructions: Sequence[Instruction], signer: Keypair) -> Transaction:
        message = await self._message(instructions, signer.pubkey())
        return Transaction([signer], message, message.recent_blockhash)

    async def simulate(self, instructions: Sequence[Instruction], signer: Keypair) -> Optional[str]:
        """
        Simulate a transaction

        Returns:
            Error text, or None when the simulation passed
        """
        tx = await self._signed(instructions, signer)
        resp = await self.client.simulate_transaction(tx)
        if resp.value.err is not None:
            logs = resp.value.logs or []
            return f"{resp.value.err}" + (f" (logs: {logs[-3:]})" if logs else "")
        return None

    async def send(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        """Sign, send with preflight and wait for confirmation; returns the signature"""
        tx = await self._signed(instructions, signer)
        resp = await self.client.send_raw_transaction(
            bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3)
        )
        signature = resp.value
        await self.client.confirm_transaction(signature, commitment=Confirmed)
        return str(signature)

    async def close(self):
        await self.client.close()

