"""
Input validation for rescue requests

Each validator returns an error message or None; validate_rescue_request
collects them per field and raises ValidationError with the first one.
"""

import re
from typing import Dict, Iterable, Optional

from eth_account import Account
from web3 import Web3

from .errors import ValidationError
from .models import RescueRequest

REQUIRED = 'This field is required'
INVALID_ADDRESS = 'Invalid Ethereum address format'
PRIVATE_KEY_LENGTH = 'Private key must be 64 characters (32 bytes)'
PRIVATE_KEY_FORMAT = 'Private key must be a valid hexadecimal string'
INVALID_NONCE = 'Nonce must be a non-negative integer'
ADDRESSES_MATCH = 'Hacked wallet and safe wallet must be different'
NETWORK_NOT_SUPPORTED = 'Network is not supported'

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


def validate_address(address: Optional[str]) -> Optional[str]:
    if not address:
        return REQUIRED
    if not Web3.is_address(address):
        return INVALID_ADDRESS
    return None


def validate_private_key(private_key: Optional[str]) -> Optional[str]:
    if not private_key:
        return REQUIRED
    clean = private_key[2:] if private_key.startswith('0x') else private_key
    if len(clean) != 64:
        return PRIVATE_KEY_LENGTH
    if not _HEX_KEY.match(clean):
        return PRIVATE_KEY_FORMAT
    return None


def validate_nonce(nonce) -> Optional[str]:
    if nonce is None or nonce == '':
        return None
    if isinstance(nonce, bool):
        return INVALID_NONCE
    try:
        value = int(nonce)
    except (TypeError, ValueError):
        return INVALID_NONCE
    if value < 0 or str(value) != str(nonce).strip():
        return INVALID_NONCE
    return None


def validate_network(network: Optional[str], supported: Iterable[str]) -> Optional[str]:
    if not network:
        return REQUIRED
    if network not in set(supported):
        return NETWORK_NOT_SUPPORTED
    return None


def address_from_key(private_key: str) -> str:
    return Account.from_key(private_key).address


def collect_request_errors(request: RescueRequest, supported_networks: Iterable[str]) -> Dict[str, str]:
    """Per-field error messages for a rescue request"""
    errors: Dict[str, str] = {}

    key_error = validate_private_key(request.private_key)
    if key_error:
        errors['private_key'] = key_error

    wallet_error = validate_address(request.safe_wallet)
    if wallet_error:
        errors['safe_wallet'] = wallet_error

    network_error = validate_network(request.network, supported_networks)
    if network_error:
        errors['network'] = network_error

    nonce_error = validate_nonce(request.nonce)
    if nonce_error:
        errors['nonce'] = nonce_error

    if not key_error and not wallet_error:
        if address_from_key(request.private_key).lower() == request.safe_wallet.lower():
            errors['safe_wallet'] = ADDRESSES_MATCH

    return errors


def validate_rescue_request(request: RescueRequest, supported_networks: Iterable[str]):
    """
    Raise ValidationError for the first invalid field

    Raises:
        ValidationError: with .field set
    """
    errors = collect_request_errors(request, supported_networks)
    if errors:
        field_name, message = next(iter(errors.items()))
        raise ValidationError(message, field=field_name)
