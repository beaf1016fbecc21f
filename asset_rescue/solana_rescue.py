"""
Solana Rescue

Moves SOL and SPL tokens out of a compromised Solana wallet.

Steps:
1. Resolve a working RPC endpoint
2. Priority fee (~3% of the base fee) unless one was given
3. Pre-sweep SOL above the retention threshold
4. Multi-pass token rescue (create ATA, transferChecked, close source account)
5. Final SOL sweep

Sweeps simulate first and shrink the amount on simulation errors.
"""

import json
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .cancellation import CancellationToken, check_cancelled
from .config import RescueConfig
from .errors import Cancelled, InsufficientFunds, RescueError, TransientNetworkError, ValidationError
from .fee_strategy import priority_fee_rate
from .solana_gateway import (
    TOKEN_2022_PROGRAM_ID, TOKEN_ACCOUNT_SIZE, TOKEN_PROGRAM_ID, SolanaGateway, close_account_ix,
    create_ata_idempotent_ix, get_associated_token_address, sol_transfer_ix, transfer_checked_ix,
    with_priority,
)

LAMPORTS_PER_SOL = 1_000_000_000
PUBLIC_RPC_URLS = ['https://api.mainnet-beta.solana.com', 'https://rpc.ankr.com/solana']
RETENTION_THRESHOLD_LAMPORTS = LAMPORTS_PER_SOL // 100  # 0.01 SOL
SIMULATION_DECREMENT_LAMPORTS = 20_000
MAX_SIMULATION_ATTEMPTS = 5
FEE_SAFETY_LAMPORTS = 10_000
FALLBACK_ATA_RENT_LAMPORTS = 2_100_000
DEFAULT_CU_LIMIT = 400_000
DEFAULT_BUFFER_LAMPORTS = 50_000
CLOSE_ATA_CU_LIMIT = 200_000


def keypair_from_input(secret_input: str) -> Keypair:
    """
    Parse a secret key given as a JSON byte array or a base58 string

    Raises:
        ValidationError: unparseable input
    """
    if not secret_input or not str(secret_input).strip():
        raise ValidationError('Invalid secret input', field='secret_input')
    text = str(secret_input).strip()
    try:
        if text.startswith('['):
            raw = bytes(json.loads(text))
            return Keypair.from_seed(raw) if len(raw) == 32 else Keypair.from_bytes(raw)
        return Keypair.from_base58_string(text)
    except Exception:
        raise ValidationError('Secret input must be a JSON byte array or base58-encoded secret key',
                              field='secret_input')


def _sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.9f}"


@dataclass
class SolanaRescueReport:
    """What a Solana rescue did"""
    success: bool = False
    message: str = ''
    error: Optional[str] = None
    rpc_url: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    priority_fee_micro_lamports: int = 0
    pre_sweep_signature: Optional[str] = None
    pre_sweep_lamports: int = 0
    pre_sweep_abandoned: bool = False
    tokens_found: int = 0
    tokens_rescued: List[Dict] = field(default_factory=list)
    tokens_remaining: List[Dict] = field(default_factory=list)
    final_sweep_signature: Optional[str] = None
    final_sweep_lamports: int = 0
    cancelled: bool = False
    log: List[str] = field(default_factory=list)

    def note(self, line: str):
        self.log.append(line)
        logger.info(f"[solana] {line}")

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'message': self.message,
            'error': self.error,
            'rpc_url': self.rpc_url,
            'source': self.source,
            'destination': self.destination,
            'priority_fee_micro_lamports': self.priority_fee_micro_lamports,
            'pre_sweep_signature': self.pre_sweep_signature,
            'pre_sweep_lamports': self.pre_sweep_lamports,
            'pre_sweep_abandoned': self.pre_sweep_abandoned,
            'tokens_found': self.tokens_found,
            'tokens_rescued': list(self.tokens_rescued),
            'tokens_remaining': list(self.tokens_remaining),
            'final_sweep_signature': self.final_sweep_signature,
            'final_sweep_lamports': self.final_sweep_lamports,
            'cancelled': self.cancelled,
            'log': list(self.log),
        }


class SolanaRescue:
    """
    Fee-aware Solana wallet rescue

    Features:
    - RPC endpoint fallback chain
    - Simulate-then-send SOL sweeps with decrementing retries
    - Token rescue ordered by USD value, postponed while SOL is short
    - Cooperative cancellation before every blocking call
    """

    def __init__(
        self,
        config: Optional[RescueConfig] = None,
        indexer=None,
        gateway_factory: Callable[[str], SolanaGateway] = SolanaGateway
    ):
        """
        Initialize Solana rescue

        Args:
            config: RescueConfig (solana section and SOLANA_RPC_URL)
            indexer: Optional IndexerClient for token USD prices
            gateway_factory: rpc_url -> gateway (injected in tests)
        """
        self.config = config or RescueConfig()
        self.indexer = indexer
        self.gateway_factory = gateway_factory

        solana = self.config.section('solana')
        self.retention_threshold = solana.get('retention_threshold_lamports', RETENTION_THRESHOLD_LAMPORTS)
        self.decrement = solana.get('simulation_decrement_lamports', SIMULATION_DECREMENT_LAMPORTS)
        self.max_attempts = solana.get('max_simulation_attempts', MAX_SIMULATION_ATTEMPTS)
        self.fee_safety = solana.get('fee_safety_lamports', FEE_SAFETY_LAMPORTS)
        self.priority_percent = solana.get('priority_fee_percent', 0.03)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def rpc_candidates(self, rpc_url: Optional[str] = None) -> List[str]:
        """Explicit URL, then SOLANA_RPC_URL, then public endpoints"""
        candidates = [rpc_url, self.config.solana_rpc_url] + PUBLIC_RPC_URLS
        return [url for url in dict.fromkeys(candidates) if url]

    async def resolve_gateway(self, rpc_url: Optional[str] = None):
        """
        First endpoint that answers getLatestBlockhash

        Raises:
            TransientNetworkError: none answered
        """
        for url in self.rpc_candidates(rpc_url):
            gateway = self.gateway_factory(url)
            if await gateway.is_reachable():
                logger.info(f"✓ Using Solana RPC {url}")
                return gateway
            logger.warning(f"⚠ Solana RPC {url} unavailable, trying next")
            await gateway.close()
        raise TransientNetworkError(
            'No working Solana RPC endpoint available. Provide a valid RPC URL (with API key if required).'
        )

    async def _priority_price(self, gateway, source: Keypair, cu_limit: int, explicit: int) -> int:
        if explicit and explicit > 0:
            return explicit
        try:
            sample = [sol_transfer_ix(source.pubkey(), source.pubkey(), 1)]
            base_fee = await gateway.fee_for(sample, source.pubkey())
            return priority_fee_rate(base_fee, cu_limit, self.priority_percent)
        except Exception as e:
            logger.warning(f"⚠ Priority fee estimate failed: {e}, using none")
            return 0

    async def _sweep_fee(self, gateway, source: Keypair, destination: Pubkey, cu_limit: int, price: int) -> int:
        sample = with_priority([sol_transfer_ix(source.pubkey(), destination, 1)], cu_limit, price)
        return await gateway.fee_for(sample, source.pubkey())

    async def send_sol_with_backoff(self, gateway, source: Keypair, destination: Pubkey, amount: int,
                                    cu_limit: int, price: int,
                                    token: Optional[CancellationToken] = None) -> Tuple[Optional[str], int]:
        """
        Simulate and send a SOL transfer, shrinking it on simulation errors

        Returns:
            (signature or None when abandoned, last amount tried)
        """
        attempts = self.max_attempts
        while attempts > 0 and amount > 0:
            check_cancelled(token)
            instructions = with_priority([sol_transfer_ix(source.pubkey(), destination, amount)], cu_limit, price)
            error = await gateway.simulate(instructions, source)
            if error:
                logger.debug(f"Sweep of {amount} lamports rejected in simulation: {error}")
                amount = max(0, amount - self.decrement)
                attempts -= 1
                continue
            check_cancelled(token)
            return await gateway.send(instructions, source), amount
        return None, amount

    async def _discover_tokens(self, gateway, owner: Pubkey, token) -> List[Dict]:
        discovered = []
        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            check_cancelled(token)
            try:
                accounts = await gateway.get_token_accounts(owner, program_id)
            except Exception as e:
                logger.warning(f"⚠ Token account listing failed for program {program_id}: {e}")
                continue
            discovered.extend(a for a in accounts if a['amount'] > 0)

        for item in discovered:
            price = None
            if self.indexer is not None and getattr(self.indexer, 'enabled', False):
                try:
                    price = await self.indexer.solana_token_price_usd(str(item['mint']))
                except Exception as e:
                    logger.debug(f"Price lookup failed for {item['mint']}: {e}")
            item['usd_price'] = price or 0.0
            item['usd_value'] = item['amount'] / (10 ** item['decimals']) * item['usd_price']

        discovered.sort(key=lambda i: i['usd_value'], reverse=True)
        return discovered

    async def _rescue_tokens(self, gateway, source: Keypair, destination: Pubkey, tokens: List[Dict],
                             cu_limit: int, price: int, report: SolanaRescueReport, token):
        owner = source.pubkey()
        try:
            ata_rent = await gateway.rent_exemption(TOKEN_ACCOUNT_SIZE)
        except Exception:
            ata_rent = FALLBACK_ATA_RENT_LAMPORTS

        pending = list(tokens)
        pass_number = 0
        while pending:
            check_cancelled(token)
            pass_number += 1
            progressed = 0

            for item in list(pending):
                check_cancelled(token)
                mint, program_id = item['mint'], item['program_id']
                try:
                    live = await gateway.get_token_account(item['address'], program_id)
                    if live is None or live['amount'] <= 0:
                        pending.remove(item)
                        continue

                    dest_ata = get_associated_token_address(destination, mint, program_id)
                    dest_exists = await gateway.account_exists(dest_ata)
                    instructions = []
                    if not dest_exists:
                        balance = await gateway.get_balance(owner)
                        if balance < ata_rent + self.fee_safety:
                            report.note(f"Pass {pass_number}: insufficient SOL ({balance}) to create ATA "
                                        f"for mint {mint} (need ~{ata_rent}). Postponing.")
                            continue
                        instructions.append(create_ata_idempotent_ix(owner, dest_ata, destination, mint, program_id))

                    instructions.append(transfer_checked_ix(
                        item['address'], mint, dest_ata, owner, live['amount'], live['decimals'], program_id
                    ))
                    instructions.append(close_account_ix(item['address'], owner, owner, program_id))

                    fee = await gateway.fee_for(
                        with_priority([sol_transfer_ix(owner, owner, 1)], cu_limit, price), owner
                    )
                    balance = await gateway.get_balance(owner)
                    rent_needed = 0 if dest_exists else ata_rent
                    if balance < rent_needed + fee + self.fee_safety:
                        report.note(f"Pass {pass_number}: balance {balance} too low for mint {mint} "
                                    f"(need ~{rent_needed + fee}). Postponing.")
                        continue

                    check_cancelled(token)
                    signature = await gateway.send(with_priority(instructions, cu_limit, price), source)
                    pending.remove(item)
                    progressed += 1
                    report.tokens_rescued.append({
                        'mint': str(mint), 'amount': live['amount'], 'decimals': live['decimals'],
                        'usd_value': item.get('usd_value', 0.0), 'signature': signature,
                    })
                    report.note(f"Saved token {mint} and closed source account. sig: {signature}")
                except Cancelled:
                    raise
                except Exception as e:
                    report.note(f"Token save failed for mint {mint}: {e}")

            if progressed == 0 and pending:
                report.note(f"No further progress possible with current SOL. Remaining tokens: {len(pending)}.")
                break

        report.tokens_remaining = [
            {'mint': str(i['mint']), 'amount': i['amount'], 'decimals': i['decimals']} for i in pending
        ]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def rescue_now(
        self,
        secret_input: str,
        destination: str,
        token: Optional[CancellationToken] = None,
        rpc_url: Optional[str] = None,
        cu_limit: int = DEFAULT_CU_LIMIT,
        cu_price_micro_lamports: int = 0,
        buffer_lamports: int = DEFAULT_BUFFER_LAMPORTS,
        sol_only: bool = False
    ) -> SolanaRescueReport:
        """
        Rescue SOL and SPL tokens to destination

        Args:
            secret_input: JSON byte array or base58 secret key
            destination: Safe wallet (base58)
            token: Cancellation token
            rpc_url: Preferred RPC endpoint
            cu_limit: Compute unit limit per transaction
            cu_price_micro_lamports: Priority fee (estimated when 0)
            buffer_lamports: Lamports kept back from sweeps
            sol_only: Skip token accounts

        Returns:
            SolanaRescueReport (never raises)
        """
        report = SolanaRescueReport(destination=destination)
        gateway = None
        try:
            source = keypair_from_input(secret_input)
            try:
                dest = Pubkey.from_string(destination)
            except Exception:
                raise ValidationError('Invalid Solana destination address', field='destination')
            report.source = str(source.pubkey())

            gateway = await self.resolve_gateway(rpc_url)
            report.rpc_url = gateway.rpc_url
            check_cancelled(token)
            report.note('Connected to Solana RPC')

            price = await self._priority_price(gateway, source, cu_limit, cu_price_micro_lamports)
            report.priority_fee_micro_lamports = price
            if price != cu_price_micro_lamports:
                report.note(f"Applying priority fee (~3%): {price} µLamports/CU")

            await self._pre_sweep(gateway, source, dest, cu_limit, price, buffer_lamports, report, token)

            if not sol_only:
                tokens = await self._discover_tokens(gateway, source.pubkey(), token)
                report.tokens_found = len(tokens)
                report.note(f"Found {len(tokens)} token accounts with positive balances")
                if tokens:
                    await self._rescue_tokens(gateway, source, dest, tokens, cu_limit, price, report, token)

            await self._final_sweep(gateway, source, dest, cu_limit, price, buffer_lamports, report, token)

            report.success = True
            report.message = (f"Solana rescue finished: {len(report.tokens_rescued)} token(s) saved, "
                              f"{len(report.tokens_remaining)} remaining")
        except Cancelled:
            report.cancelled = True
            report.message = 'Rescue cancelled'
            report.note(report.message)
        except (ValidationError, TransientNetworkError) as e:
            report.message = report.error = str(e)
            logger.error(f"✗ Solana rescue failed: {e}")
        except Exception as e:
            report.error = str(e)
            report.message = f"Solana rescue failed: {e}"
            logger.error(f"✗ Solana rescue failed unexpectedly: {e}")
        finally:
            if gateway is not None:
                await gateway.close()
        return report

    async def _pre_sweep(self, gateway, source: Keypair, dest: Pubkey, cu_limit: int, price: int,
                         buffer_lamports: int, report: SolanaRescueReport, token):
        try:
            check_cancelled(token)
            balance = await gateway.get_balance(source.pubkey())
            if balance <= self.retention_threshold:
                return
            fee = await self._sweep_fee(gateway, source, dest, cu_limit, price)
            to_send = balance - self.retention_threshold - fee - buffer_lamports
            if to_send <= 0:
                return
            signature, amount = await self.send_sol_with_backoff(gateway, source, dest, to_send, cu_limit, price, token)
            if signature:
                report.pre_sweep_signature = signature
                report.pre_sweep_lamports = amount
                report.note(f"Pre-swept excess SOL: {_sol(amount)} SOL, sig: {signature}")
            else:
                report.pre_sweep_abandoned = True
                report.note('Pre-sweep skipped after simulation retries.')
        except Cancelled:
            raise
        except Exception as e:
            report.note(f"Pre-sweep failed: {e}")

    async def _final_sweep(self, gateway, source: Keypair, dest: Pubkey, cu_limit: int, price: int,
                           buffer_lamports: int, report: SolanaRescueReport, token):
        try:
            check_cancelled(token)
            balance = await gateway.get_balance(source.pubkey())
            if balance <= 0:
                report.note('No SOL to sweep')
                return
            fee = await self._sweep_fee(gateway, source, dest, cu_limit, price)
            to_send = balance - fee - buffer_lamports
            if to_send <= 0:
                report.note(f"SOL too low to sweep after fees. Balance={balance} lamports, "
                            f"estFee={fee}, buffer={buffer_lamports}.")
                return
            signature, amount = await self.send_sol_with_backoff(gateway, source, dest, to_send, cu_limit, price, token)
            if signature:
                report.final_sweep_signature = signature
                report.final_sweep_lamports = amount
                report.note(f"SOL sweep sent: {_sol(amount)} SOL, sig: {signature}")
            else:
                report.note('SOL sweep aborted after simulation retries; balance likely too low after fees.')
        except Cancelled:
            raise
        except Exception as e:
            report.note(f"SOL sweep failed: {e}")

    async def close_ata(
        self,
        secret_input: str,
        owner: Optional[str],
        mint: str,
        rent_recipient: Optional[str] = None,
        rpc_url: Optional[str] = None
    ) -> Dict:
        """
        Close an emptied associated token account and send its rent away

        The secret must belong to the ATA owner, who signs as close authority
        and pays the fee. Legacy SPL Token and Token-2022 ATAs are both looked up.

        Args:
            secret_input: Owner secret (JSON byte array or base58)
            owner: ATA owner (base58), None for the secret's own account
            mint: Token mint (base58)
            rent_recipient: Rent destination (defaults to owner)
            rpc_url: Preferred RPC endpoint

        Returns:
            {'success', 'ata', 'signature'?, 'skipped'?}

        Raises:
            ValidationError: owner is not the secret's account
            RescueError: the ATA still holds tokens
            InsufficientFunds: owner cannot cover the fee
        """
        source = keypair_from_input(secret_input)
        owner_key = Pubkey.from_string(owner) if owner else source.pubkey()
        if owner_key != source.pubkey():
            raise ValidationError('Closing an ATA needs the secret of its owner', field='owner')
        mint_key = Pubkey.from_string(mint)
        rent_to = Pubkey.from_string(rent_recipient) if rent_recipient else owner_key

        gateway = await self.resolve_gateway(rpc_url)
        try:
            ata, account, program_id = None, None, TOKEN_PROGRAM_ID
            for candidate in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
                address = get_associated_token_address(owner_key, mint_key, candidate)
                found = await gateway.get_token_account(address, candidate)
                if ata is None or found is not None:
                    ata, account, program_id = address, found, candidate
                if found is not None:
                    break

            if account is None:
                logger.info(f"ATA {ata} does not exist or already closed")
                return {'success': True, 'ata': str(ata), 'skipped': True}
            if account['amount'] > 0:
                raise RescueError('ATA has non-zero token balance. Transfer tokens out before closing.')

            try:
                base_fee = await gateway.fee_for([sol_transfer_ix(owner_key, owner_key, 1)], owner_key)
                price = priority_fee_rate(base_fee, CLOSE_ATA_CU_LIMIT, self.priority_percent)
            except Exception as e:
                logger.warning(f"⚠ Priority fee estimate for ATA close failed: {e}, using 1 µLamport/CU")
                price = 1

            instructions = with_priority([close_account_ix(ata, rent_to, owner_key, program_id)],
                                         CLOSE_ATA_CU_LIMIT, price)
            fee = await gateway.fee_for(instructions, owner_key)
            balance = await gateway.get_balance(owner_key)
            if balance < fee:
                raise InsufficientFunds(f"Insufficient SOL for close (have {balance}, need ~{fee}).",
                                        available=balance, required=fee)

            signature = await gateway.send(instructions, source)
            logger.info(f"✓ Closed ATA {ata}, rent to {rent_to}, sig {signature}")
            return {'success': True, 'signature': signature, 'ata': str(ata)}
        finally:
            await gateway.close()
