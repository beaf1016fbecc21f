"""Rescue request validation"""

import pytest

from asset_rescue.errors import ValidationError
from asset_rescue.models import RescueRequest
from asset_rescue.validation import (
    ADDRESSES_MATCH, INVALID_ADDRESS, INVALID_NONCE, NETWORK_NOT_SUPPORTED, PRIVATE_KEY_FORMAT,
    PRIVATE_KEY_LENGTH, REQUIRED, collect_request_errors, validate_address, validate_nonce,
    validate_private_key, validate_rescue_request,
)

from conftest import OWNER, PRIVATE_KEY, SAFE_WALLET

NETWORKS = ['mainnet', 'base']


def test_private_key_checks():
    assert validate_private_key(PRIVATE_KEY) is None
    assert validate_private_key(PRIVATE_KEY[2:]) is None
    assert validate_private_key('') == REQUIRED
    assert validate_private_key('0x1234') == PRIVATE_KEY_LENGTH
    assert validate_private_key('z' * 64) == PRIVATE_KEY_FORMAT


def test_address_checks():
    assert validate_address(SAFE_WALLET) is None
    assert validate_address(None) == REQUIRED
    assert validate_address('0x123') == INVALID_ADDRESS


@pytest.mark.parametrize('nonce, error', [
    (None, None), ('', None), (0, None), ('12', None),
    (-1, INVALID_NONCE), ('1.5', INVALID_NONCE), ('abc', INVALID_NONCE), (True, INVALID_NONCE),
])
def test_nonce_checks(nonce, error):
    assert validate_nonce(nonce) == error


def test_collects_errors_per_field():
    request = RescueRequest(private_key='bad', safe_wallet='0x1', network='solana', nonce=-3)
    errors = collect_request_errors(request, NETWORKS)
    assert set(errors) == {'private_key', 'safe_wallet', 'network', 'nonce'}
    assert errors['network'] == NETWORK_NOT_SUPPORTED


def test_safe_wallet_must_differ_from_compromised_wallet():
    request = RescueRequest(private_key=PRIVATE_KEY, safe_wallet=OWNER.lower(), network='base')
    with pytest.raises(ValidationError) as raised:
        validate_rescue_request(request, NETWORKS)
    assert raised.value.field == 'safe_wallet'
    assert str(raised.value) == ADDRESSES_MATCH


def test_valid_request_passes():
    request = RescueRequest(private_key=PRIVATE_KEY, safe_wallet=SAFE_WALLET, network='mainnet', nonce=4)
    validate_rescue_request(request, NETWORKS)
