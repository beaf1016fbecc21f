"""
EVM Gateway

Thin async layer over web3.py used by discovery and transfers.

Features:
- Primary + fallback RPC endpoint per network
- Multicall3 tryAggregate batch token reads
- Logs normalized to plain dicts (hex strings)
- Provider block-range errors surfaced as BlockRangeLimitError
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from eth_abi import decode
from eth_account import Account
from loguru import logger
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .abis import ABIS
from .errors import BlockRangeLimitError, TransientNetworkError, is_block_range_error
from .fee_strategy import FeeEstimate
from .networks import NetworkConfig

DEFAULT_REQUEST_TIMEOUT = 30


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def short(address: str) -> str:
    """Shortened address for log lines"""
    return f"{address[:6]}...{address[-4:]}" if address and len(address) > 12 else str(address)


def _normalize_args(args) -> list:
    return [checksum(a) if isinstance(a, str) and Web3.is_address(a) else a for a in args]


def _decode_text(data: bytes) -> Optional[str]:
    """Decode a string or a legacy bytes32 return value"""
    if not data:
        return None
    try:
        return decode(['string'], data)[0]
    except Exception:
        pass
    try:
        raw = decode(['bytes32'], data)[0]
        return raw.rstrip(b'\x00').decode('utf-8', errors='ignore') or None
    except Exception:
        return None


def _decode_uint(data: bytes) -> Optional[int]:
    if not data:
        return None
    try:
        return decode(['uint256'], data)[0]
    except Exception:
        return None


class EvmGateway:
    """
    One network's RPC access

    Every call tries the primary endpoint then the fallback. Contract reverts
    are not retried on the fallback.
    """

    def __init__(self, network: NetworkConfig, request_timeout: int = DEFAULT_REQUEST_TIMEOUT):
        """
        Initialize gateway

        Args:
            network: Network configuration
            request_timeout: HTTP timeout per RPC request (seconds)
        """
        self.network = network
        self.providers: List[AsyncWeb3] = [
            AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={'timeout': request_timeout}))
            for url in network.rpc_urls()
        ]
        logger.debug(f"EVM gateway ready for {network.id} ({len(self.providers)} endpoints)")

    async def _run(self, op: Callable[[AsyncWeb3], Any], what: str) -> Any:
        last_error: Optional[Exception] = None
        for index, w3 in enumerate(self.providers):
            try:
                return await op(w3)
            except ContractLogicError:
                raise
            except Exception as e:
                if is_block_range_error(e):
                    raise BlockRangeLimitError(str(e))
                last_error = e
                if index + 1 < len(self.providers):
                    logger.debug(f"{what} failed on {self.network.id} primary RPC: {e}, trying fallback")
        raise TransientNetworkError(f"{what} failed on {self.network.id}: {last_error}")

    def _contract(self, w3: AsyncWeb3, address: str, abi_name: str):
        return w3.eth.contract(address=checksum(address), abi=ABIS[abi_name])

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> int:
        return await self._run(lambda w3: w3.eth.get_balance(checksum(address)), "get_balance")

    async def get_block_number(self) -> int:
        async def op(w3):
            return await w3.eth.block_number
        return await self._run(op, "block_number")

    async def get_transaction_count(self, address: str) -> int:
        return await self._run(
            lambda w3: w3.eth.get_transaction_count(checksum(address), 'pending'), "get_transaction_count"
        )

    async def get_logs(self, from_block: int, to_block: int, topics: List[Optional[str]],
                       address: Optional[str] = None) -> List[Dict]:
        """
        Fetch event logs

        Returns:
            [{'address', 'topics', 'data', 'block_number'}] with hex strings

        Raises:
            BlockRangeLimitError: provider refused the range
        """
        params: Dict[str, Any] = {'fromBlock': from_block, 'toBlock': to_block, 'topics': topics}
        if address:
            params['address'] = checksum(address)

        try:
            raw_logs = await self._run(lambda w3: w3.eth.get_logs(params), "get_logs")
        except BlockRangeLimitError as e:
            raise BlockRangeLimitError(str(e), from_block, to_block)

        return [
            {
                'address': log['address'],
                'topics': [Web3.to_hex(t) for t in log['topics']],
                'data': Web3.to_hex(log['data']) if log.get('data') else '0x',
                'block_number': log.get('blockNumber'),
            }
            for log in raw_logs
        ]

    async def get_fee_estimate(self) -> FeeEstimate:
        """EIP-1559 fees when the latest block has a base fee, else legacy gas price"""
        async def op(w3):
            block = await w3.eth.get_block('latest')
            base_fee = block.get('baseFeePerGas')
            if base_fee is not None:
                try:
                    priority = await w3.eth.max_priority_fee
                except Exception:
                    priority = 1_000_000_000 if self.network.id == 'mainnet' else 1_000_000
                return FeeEstimate(max_fee_per_gas=base_fee * 2 + priority, max_priority_fee_per_gas=priority)
            return FeeEstimate(gas_price=await w3.eth.gas_price)
        return await self._run(op, "fee_estimate")

    async def estimate_gas(self, tx: Dict) -> int:
        return await self._run(lambda w3: w3.eth.estimate_gas(tx), "estimate_gas")

    # ------------------------------------------------------------------
    # Contract reads
    # ------------------------------------------------------------------

    async def call(self, contract: str, abi_name: str, fn_name: str, *args) -> Any:
        """Read-only contract call, e.g. call(token, 'erc20', 'balanceOf', owner)"""
        async def op(w3):
            fn = getattr(self._contract(w3, contract, abi_name).functions, fn_name)
            return await fn(*_normalize_args(args)).call()
        return await self._run(op, f"{fn_name}@{short(contract)}")

    async def supports_interface(self, contract: str, interface_id: str) -> bool:
        try:
            return bool(await self.call(contract, 'erc721', 'supportsInterface', Web3.to_bytes(hexstr=interface_id)))
        except Exception:
            return False

    async def read_token(self, token: str, owner: str) -> Dict:
        """Per-contract ERC20 read with metadata defaults"""
        balance = await self.call(token, 'erc20', 'balanceOf', checksum(owner))
        info = {'address': checksum(token), 'balance': int(balance), 'decimals': 18,
                'name': 'Unknown Token', 'symbol': 'UNKNOWN'}
        try:
            info['decimals'] = int(await self.call(token, 'erc20', 'decimals'))
        except Exception as e:
            logger.debug(f"decimals() failed for {short(token)}: {e}, assuming 18")
        for field_name in ('name', 'symbol'):
            value = await self._read_text(token, field_name)
            if value:
                info[field_name] = value
        return info

    async def _read_text(self, token: str, field_name: str) -> Optional[str]:
        try:
            return await self.call(token, 'erc20', field_name)
        except Exception:
            pass
        try:
            raw = await self.call(token, 'erc20_bytes32', field_name)
            return raw.rstrip(b'\x00').decode('utf-8', errors='ignore') or None
        except Exception:
            return None

    async def read_token_batch(self, tokens: List[str], owner: str) -> List[Dict]:
        """
        balanceOf/decimals/name/symbol for many tokens in one multicall

        Returns:
            One dict per token (same shape as read_token); tokens whose
            balanceOf failed are omitted
        """
        if not tokens:
            return []

        owner_cs = checksum(owner)

        async def op(w3):
            erc20 = w3.eth.contract(abi=ABIS['erc20'])
            calls = []
            for token in tokens:
                target = checksum(token)
                calls.append((target, Web3.to_bytes(hexstr=self._encode(erc20, 'balanceOf', [owner_cs]))))
                calls.append((target, Web3.to_bytes(hexstr=self._encode(erc20, 'decimals', []))))
                calls.append((target, Web3.to_bytes(hexstr=self._encode(erc20, 'name', []))))
                calls.append((target, Web3.to_bytes(hexstr=self._encode(erc20, 'symbol', []))))
            multicall = self._contract(w3, self.network.multicall_address, 'multicall3')
            return await multicall.functions.tryAggregate(False, calls).call()

        results = await self._run(op, "multicall tryAggregate")

        records = []
        for i, token in enumerate(tokens):
            (ok_bal, bal), (ok_dec, dec), (ok_name, name), (ok_sym, sym) = results[i * 4:i * 4 + 4]
            balance = _decode_uint(bal) if ok_bal else None
            if balance is None:
                continue
            decimals = _decode_uint(dec) if ok_dec else None
            records.append({
                'address': checksum(token),
                'balance': balance,
                'decimals': decimals if decimals is not None else 18,
                'name': (_decode_text(name) if ok_name else None) or 'Unknown Token',
                'symbol': (_decode_text(sym) if ok_sym else None) or 'UNKNOWN',
            })
        return records

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(contract, fn_name: str, args: List) -> str:
        encoder = getattr(contract, 'encode_abi', None)
        if encoder is not None:
            return encoder(fn_name, args=args)
        return contract.encodeABI(fn_name=fn_name, args=args)

    def build_call(self, contract: str, abi_name: str, fn_name: str, *args, sender: Optional[str] = None) -> Dict:
        """Transaction dict (to/data/value) for a contract write"""
        w3 = self.providers[0]
        data = self._encode(self._contract(w3, contract, abi_name), fn_name, _normalize_args(args))
        tx = {'to': checksum(contract), 'data': data, 'value': 0}
        if sender:
            tx['from'] = checksum(sender)
        return tx

    async def send_transaction(self, private_key: str, tx: Dict) -> str:
        """
        Sign and broadcast

        Args:
            private_key: Hex private key of the sender
            tx: Transaction dict (gas + fee fields may already be set)

        Returns:
            Transaction hash (hex)
        """
        account = Account.from_key(private_key)

        async def op(w3):
            full_tx = dict(tx)
            full_tx['from'] = account.address
            full_tx.setdefault('chainId', self.network.chain_id)
            if 'nonce' not in full_tx:
                full_tx['nonce'] = await w3.eth.get_transaction_count(account.address, 'pending')
            if 'maxFeePerGas' not in full_tx and 'gasPrice' not in full_tx:
                full_tx['gasPrice'] = await w3.eth.gas_price
            if 'gas' not in full_tx:
                full_tx['gas'] = await w3.eth.estimate_gas(full_tx)

            signed = account.sign_transaction(full_tx)
            raw = getattr(signed, 'raw_transaction', None) or getattr(signed, 'rawTransaction')
            tx_hash = await w3.eth.send_raw_transaction(raw)
            return Web3.to_hex(tx_hash)

        return await self._run(op, "send_transaction")

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict:
        """
        Wait for a receipt

        Raises:
            asyncio.TimeoutError: receipt did not arrive in time
        """
        w3 = self.providers[0]
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise asyncio.TimeoutError(str(e))
        return {'status': receipt.get('status'), 'block_number': receipt.get('blockNumber'),
                'gas_used': receipt.get('gasUsed')}

    async def close(self):
        for w3 in self.providers:
            try:
                disconnect = getattr(w3.provider, 'disconnect', None)
                if disconnect is not None:
                    await disconnect()
            except Exception as e:
                logger.debug(f"Error closing provider for {self.network.id}: {e}")


async def get_logs_paged(gateway, from_block: int, to_block: int, topics: List[Optional[str]],
                         address: Optional[str] = None, step: int = 450, min_step: int = 100,
                         token=None) -> List[Dict]:
    """
    Scan [from_block, to_block] in windows, halving the window on range errors

    Windows that still fail at min_step are skipped with a warning.
    """
    logs: List[Dict] = []
    start = max(0, from_block)
    current_step = step
    while start <= to_block:
        if token is not None:
            token.raise_if_cancelled()
        end = min(to_block, start + current_step)
        try:
            logs.extend(await gateway.get_logs(start, end, topics, address=address))
        except BlockRangeLimitError as e:
            if current_step // 2 >= min_step:
                current_step //= 2
                continue
            logger.warning(f"⚠ Skipping logs [{start}, {end}]: {e}")
        except TransientNetworkError as e:
            logger.warning(f"⚠ Log query [{start}, {end}] failed: {e}")
        start = end + 1
    return logs
