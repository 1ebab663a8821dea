"""
Unit tests for the shareable link codec.
"""

import pytest

from drops.keys import KeyGenerator
from drops.links import SharedDropReference, decode, encode, share_link, wallet_link
from drops.store import Drop


def _drop(amount=10 ** 24, limited=False) -> Drop:
    pair = KeyGenerator().generate()
    return Drop(public_key=pair.public_key, secret_key=pair.secret_key, amount=amount, limited=limited)


class TestDecode:
    """Incoming links."""

    def test_example_link(self):
        ref = decode("key=abc&amount=100&from=alice&limited=true")
        assert ref == SharedDropReference(key="abc", amount=100, from_account="alice", limited=True)

    def test_limited_defaults_false(self):
        assert decode("key=abc&amount=100&from=alice").limited is False

    @pytest.mark.parametrize("value", ["false", "True", "1", "yes", ""])
    def test_only_literal_true_is_limited(self, value):
        assert decode(f"key=abc&amount=100&from=alice&limited={value}").limited is False

    def test_full_url(self):
        ref = decode("https://drops.example.com/?key=abc&amount=7&from=alice.near")
        assert ref.key == "abc"
        assert ref.amount == 7
        assert ref.from_account == "alice.near"

    def test_leading_question_mark(self):
        assert decode("?key=abc&amount=7&from=alice").amount == 7

    @pytest.mark.parametrize("link", [
        None,
        "",
        "amount=100&from=alice",
        "key=abc&from=alice",
        "key=abc&amount=100",
        "key=&amount=100&from=alice",
        "key=abc&amount=ten&from=alice",
        "key=abc&amount=-5&from=alice",
        "https://drops.example.com/",
    ])
    def test_incomplete_links_are_absent(self, link):
        """Anything short of key+amount+from is the normal no-drop state."""
        assert decode(link) is None

    def test_u128_amount_survives(self):
        assert decode(f"key=abc&amount={2 ** 128 - 1}&from=alice").amount == 2 ** 128 - 1


class TestEncode:

    @pytest.mark.parametrize("limited", [False, True])
    def test_decode_reproduces_encoded_drop(self, limited):
        drop = _drop(amount=123 * 10 ** 22, limited=limited)

        ref = decode(encode(drop, "alice.near"))

        assert ref.to_dict() == {
            "key": drop.secret_key,
            "amount": drop.amount,
            "from": "alice.near",
            "limited": limited,
        }

    def test_limited_written_as_words(self):
        assert "limited=false" in encode(_drop(), "alice.near")
        assert "limited=true" in encode(_drop(limited=True), "alice.near")


class TestDerivedLinks:

    def test_wallet_link(self):
        link = wallet_link("https://wallet.testnet.near.org/", "linkdrop.testnet", "SECRET")
        assert link == "https://wallet.testnet.near.org/create/linkdrop.testnet/SECRET"

    def test_share_link_decodes_back(self):
        drop = _drop()
        link = share_link("https://drops.example.com/", drop, "alice.testnet")

        assert link.startswith("https://drops.example.com/?key=")
        assert decode(link).key == drop.secret_key
