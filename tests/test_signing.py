"""Tests for the signing backends."""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from tollgate.errors import SigningError
from tollgate.signing import (
    LocalSigner,
    Signer,
    build_domain_type,
    full_typed_data,
    message_digest,
    recover_message_signer,
    recover_typed_data_signer,
    typed_data_digest,
)


DOMAIN = {
    "name": "USD Coin",
    "version": "2",
    "chainId": 84532,
    "verifyingContract": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}
TYPES = {"Ping": [{"name": "value", "type": "uint256"}]}


class TestLocalSigner:
    @pytest.fixture
    def account(self):
        return Account.create()

    @pytest.fixture
    def signer(self, account):
        return LocalSigner(account)

    def test_is_a_signer(self, signer):
        assert isinstance(signer, Signer)
        assert signer.address in repr(signer)

    def test_typed_data_round_trip(self, signer):
        digest = typed_data_digest(DOMAIN, TYPES, "Ping", {"value": 7})
        signature = signer.sign_digest(digest)
        assert len(signature) == 65
        assert signature[-1] in (27, 28)
        assert recover_typed_data_signer(DOMAIN, TYPES, "Ping", {"value": 7}, signature) == signer.address

    def test_message_round_trip(self, signer):
        signature = signer.sign_digest(message_digest("1:exact:eip155%3A84532"))
        assert recover_message_signer("1:exact:eip155%3A84532", signature) == signer.address

    def test_digest_matches_eth_account_signing(self, account, signer):
        # RFC 6979 signatures are deterministic, so equal digests give equal bytes
        text = "1:exact:eip155%3A84532"
        expected = account.sign_message(encode_defunct(text=text)).signature
        assert signer.sign_digest(message_digest(text)) == bytes(expected)

        full = full_typed_data(DOMAIN, TYPES, "Ping", {"value": 7})
        expected = account.sign_typed_data(full_message=full).signature
        assert signer.sign_digest(typed_data_digest(DOMAIN, TYPES, "Ping", {"value": 7})) == bytes(expected)

    @pytest.mark.parametrize("digest", [b"", b"\x01" * 31, b"\x01" * 33])
    def test_digest_must_be_32_bytes(self, signer, digest):
        with pytest.raises(SigningError, match="32 bytes"):
            signer.sign_digest(digest)


class TestDigests:
    def test_domain_type_follows_present_keys(self):
        assert [f["name"] for f in build_domain_type(DOMAIN)] == [
            "name",
            "version",
            "chainId",
            "verifyingContract",
        ]
        assert build_domain_type({"name": "x"}) == [{"name": "name", "type": "string"}]

    def test_digests_are_stable(self):
        a = typed_data_digest(DOMAIN, TYPES, "Ping", {"value": 1})
        assert a == typed_data_digest(DOMAIN, TYPES, "Ping", {"value": 1})
        assert a != typed_data_digest(DOMAIN, TYPES, "Ping", {"value": 2})
        assert len(a) == 32
        assert len(message_digest("hello")) == 32
