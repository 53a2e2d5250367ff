"""
Tests for MessageInfo construction and personal_sign param decoding.
"""

from __future__ import annotations

import dataclasses

import pytest

from sigprint import (
    NONCE_PLACEHOLDER,
    EmptyInput,
    MessageInfo,
    SignRequest,
    create_message_info,
    decode_sign_param,
    generate_fingerprint,
    tokenize,
)

from conftest import ALICE


def _req(message: str, domain: str = "example.com") -> SignRequest:
    return SignRequest(ALICE, message, domain, "Example")


def test_no_prior_fingerprint_is_literal():
    info = create_message_info(_req("Sign in nonce 1"), {}, now=1000)
    assert info.fingerprint == tokenize("Sign in nonce 1")
    assert info.created_at == 1000
    assert info.signer_address == ALICE
    assert info.domain == "example.com"
    assert info.display_name == "Example"


def test_created_at_defaults_to_now_ms():
    info = create_message_info(_req("hi"), {})
    assert info.created_at > 1_600_000_000_000


def test_prior_fingerprint_infers_nonce():
    prior = tokenize("Sign in nonce 1")
    info = create_message_info(_req("Sign in nonce 2"), {"example.com": prior})
    assert info.fingerprint == ("Sign", " ", "in", " ", "nonce", " ", NONCE_PLACEHOLDER)


def test_prior_for_other_domain_is_ignored():
    prior = tokenize("Sign in nonce 1")
    info = create_message_info(_req("Sign in nonce 2"), {"other.com": prior})
    assert info.fingerprint == tokenize("Sign in nonce 2")


def test_template_change_falls_back_to_literal():
    """A stored fingerprint of different length never aborts creation."""
    prior = tokenize("Old template nonce 1")
    msg = "Brand new template with nonce 9"
    info = create_message_info(_req(msg), {"example.com": prior})
    assert info.fingerprint == tokenize(msg)


def test_empty_stored_fingerprint_falls_back():
    info = create_message_info(_req("hi there"), {"example.com": ()})
    assert info.fingerprint == tokenize("hi there")


def test_message_info_is_immutable():
    info = create_message_info(_req("hi"), {})
    with pytest.raises(dataclasses.FrozenInstanceError):
        info.domain = "evil.com"


def test_message_info_dict_round_trip():
    info = create_message_info(_req("Sign in nonce 1"), {}, now=5)
    again = MessageInfo.from_dict(info.to_dict())
    assert again == info
    assert isinstance(info.to_dict()["fingerprint"], list)


def test_empty_input_still_escalates():
    with pytest.raises(EmptyInput):
        generate_fingerprint([])


def test_decode_hex_param():
    param = "0x" + "Sign in to example.com".encode().hex()
    assert decode_sign_param(param) == "Sign in to example.com"


def test_decode_keeps_plain_text():
    assert decode_sign_param("Sign in") == "Sign in"


def test_decode_keeps_non_utf8_blob():
    assert decode_sign_param("0xffffffffff") == "0xffffffffff"


def test_decode_keeps_binary_looking_blob():
    assert decode_sign_param("0x0001020304") == "0x0001020304"
