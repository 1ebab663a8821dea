"""
Tests for the claim protocol and reclaim.

Failure handling is the same for every variant: the decision port is told,
the result says REJECTED or UNAVAILABLE, and nothing local changes. No
variant resets or navigates anywhere on failure.
"""

import threading

import pytest

from drops.claim import ClaimOutcome, ClaimProtocol, ClaimVariant
from drops.constants import LIMITS, MULTISIG_METHOD_NAMES
from drops.credentials import CredentialStore
from drops.errors import ConfigurationError, RemoteUnavailable, ValidationError
from drops.funding import FundingProtocol
from drops.links import SharedDropReference, decode, encode
from drops.ports import PresetDecisions

from conftest import CLAIMER, OWNER, near

WASM = b"\0asm\x01\x00\x00\x00multisig"


async def _share(ctx, amount=None, limited=False) -> SharedDropReference:
    """Fund a drop as the owner and hand back what the link carries."""
    drop = await FundingProtocol(ctx).fund_drop(amount or near(2), limited=limited)
    return decode(encode(drop, ctx.account_id))


class _ThreadRecordingCredentials(CredentialStore):

    def __init__(self, *args, **kwargs):
        self.save_threads: list[int] = []
        super().__init__(*args, **kwargs)

    def _save(self):
        self.save_threads.append(threading.get_ident())
        super()._save()


@pytest.fixture
def claimer_port() -> PresetDecisions:
    return PresetDecisions()


@pytest.fixture
def claims(make_context, claimer_port) -> ClaimProtocol:
    """Protocol as seen by the claiming account."""
    return ClaimProtocol(make_context(CLAIMER, claimer_port), contract_code=WASM)


class TestClaimToAccount:

    async def test_claims_into_signed_in_account(self, ctx, claims, claimer_port, gateway):
        ref = await _share(ctx)
        before = gateway.accounts[CLAIMER].balance

        result = await claims.claim_to_account(ref)

        assert result.outcome is ClaimOutcome.CLAIMED
        assert result.account_id == CLAIMER
        assert gateway.accounts[CLAIMER].balance == before + near(2) - LIMITS.ACCESS_KEY_ALLOWANCE
        assert claimer_port.last_notification == "Drop claimed"
        assert CLAIMER in claimer_port.confirmations[0]

    async def test_refreshes_balance(self, ctx, claims, gateway):
        ref = await _share(ctx)

        result = await claims.claim_to_account(ref)

        assert gateway.calls_to("get_account_balance") == [("get_account_balance", CLAIMER)]
        assert result.balance == gateway.accounts[CLAIMER].balance
        assert result.to_dict()["balance"] == str(result.balance)

    async def test_balance_refresh_failure_is_not_fatal(self, ctx, claims, gateway):
        ref = await _share(ctx)
        gateway.fail_next("get_account_balance", RemoteUnavailable("timeout", method="view_account"))

        result = await claims.claim_to_account(ref)

        assert result.outcome is ClaimOutcome.CLAIMED
        assert result.balance is None

    async def test_explicit_target(self, ctx, claims, gateway):
        ref = await _share(ctx)
        result = await claims.claim_to_account(ref, OWNER)
        assert result.account_id == OWNER
        assert gateway.calls_to("claim") == [("claim", OWNER)]

    async def test_second_claim_rejected(self, ctx, claims, claimer_port):
        ref = await _share(ctx)
        await claims.claim_to_account(ref)

        result = await claims.claim_to_account(ref)

        assert result.outcome is ClaimOutcome.REJECTED
        assert "may have already been claimed" in claimer_port.last_notification

    async def test_declined_confirmation(self, ctx, make_context, gateway):
        ref = await _share(ctx)
        claims = ClaimProtocol(make_context(CLAIMER, PresetDecisions(approve=False)))

        result = await claims.claim_to_account(ref)

        assert result.outcome is ClaimOutcome.CANCELLED
        assert gateway.calls_to("claim") == []

    async def test_limited_drop_cannot_be_claimed(self, ctx, claims, gateway):
        ref = await _share(ctx, near(40), limited=True)
        with pytest.raises(ValidationError):
            await claims.claim_to_account(ref)
        assert gateway.calls_to("claim") == []

    async def test_short_account_id_rejected_locally(self, ctx, claims, gateway):
        ref = await _share(ctx)
        with pytest.raises(ValidationError):
            await claims.claim_to_account(ref, "x")
        assert gateway.calls_to("claim") == []

    async def test_issuer_claiming_own_link_forgets_drop(self, ctx, store):
        """Claiming a locally owned key removes it from the owner's store."""
        ref = await _share(ctx)
        assert len(await store.load(OWNER)) == 1

        result = await ClaimProtocol(ctx).claim_to_account(ref)

        assert result.success
        assert await store.load(OWNER) == []

    async def test_claimer_does_not_touch_issuer_store(self, ctx, claims, store, reconciler):
        ref = await _share(ctx)
        await claims.claim_to_account(ref)

        assert len(await store.load(OWNER)) == 1
        report = await reconciler.reconcile(OWNER)
        assert len(report.pruned) == 1


class TestCreateAccount:

    async def test_creates_account_and_stores_key(self, ctx, claims, claimer_port, gateway, credentials):
        ref = await _share(ctx)

        result = await claims.create_account(ref, "carol.testnet")

        assert result.outcome is ClaimOutcome.ACCOUNT_CREATED
        account = gateway.accounts["carol.testnet"]
        assert account.balance == near(2) - LIMITS.ACCESS_KEY_ALLOWANCE
        assert account.access_keys == [result.new_public_key]
        assert credentials.get_key("carol.testnet").public_key == result.new_public_key
        assert claimer_port.last_notification == "Account carol.testnet created."
        assert result.balance == gateway.accounts[CLAIMER].balance

    async def test_key_written_off_the_event_loop(self, ctx, make_context, config):
        credentials = _ThreadRecordingCredentials(
            config.credentials_path, network_id=config.network_id, secret=config.credentials_secret
        )
        claimer = make_context(CLAIMER)
        claimer.credentials = credentials
        ref = await _share(ctx)

        result = await ClaimProtocol(claimer).create_account(ref, "carol.testnet")

        assert result.success
        assert credentials.save_threads
        assert threading.get_ident() not in credentials.save_threads

    async def test_prompts_for_account_id(self, ctx, make_context, gateway):
        ref = await _share(ctx)
        port = PresetDecisions(account_id="dave.testnet")

        result = await ClaimProtocol(make_context(CLAIMER, port)).create_account(ref)

        assert result.account_id == "dave.testnet"
        assert "New Account Id" in port.prompts
        assert "dave.testnet" in gateway.accounts

    async def test_taken_account_id(self, ctx, claims, claimer_port, gateway, credentials):
        ref = await _share(ctx)

        result = await claims.create_account(ref, CLAIMER)

        assert result.outcome is ClaimOutcome.REJECTED
        assert claimer_port.last_notification == (
            f"Unable to create account {CLAIMER}. The account id might be taken."
        )
        assert credentials.get_key(CLAIMER) is None
        # Still claimable after the failed attempt
        retry = await claims.create_account(ref, "carol.testnet")
        assert retry.success

    async def test_missing_account_id(self, ctx, claims, gateway):
        ref = await _share(ctx)
        with pytest.raises(ValidationError):
            await claims.create_account(ref)
        assert gateway.calls_to("create_account_and_claim") == []

    async def test_declined_generates_nothing(self, ctx, make_context, gateway, key_generator):
        ref = await _share(ctx)
        claims = ClaimProtocol(
            make_context(CLAIMER, PresetDecisions(approve=False)), key_generator=key_generator
        )

        result = await claims.create_account(ref, "carol.testnet")

        assert result.outcome is ClaimOutcome.CANCELLED
        assert key_generator.generated == []
        assert gateway.calls_to("create_account_and_claim") == []


class TestCreateMultisig:

    async def test_limited_drop_creates_multisig(self, ctx, claims, gateway):
        ref = await _share(ctx, near(40), limited=True)

        result = await claims.create_multisig(ref, "vault.testnet")

        assert result.outcome is ClaimOutcome.ACCOUNT_CREATED
        call = gateway.calls_to("create_multisig_and_claim")[0]
        assert call[1:] == ("vault.testnet", result.new_public_key, LIMITS.MULTISIG_CONFIRMATIONS)
        assert gateway.accounts["vault.testnet"].multisig_confirmations == 2


class TestCreateContract:

    async def test_deploys_multisig_wasm(self, ctx, claims, gateway):
        ref = await _share(ctx, near(5))

        result = await claims.create_contract(ref, "multi.testnet")

        assert result.outcome is ClaimOutcome.ACCOUNT_CREATED
        call = gateway.calls_to("create_contract_and_claim")[0]
        assert call[3] == LIMITS.ACCESS_KEY_ALLOWANCE
        assert call[4] == MULTISIG_METHOD_NAMES
        assert gateway.accounts["multi.testnet"].contract_code == WASM

    async def test_reads_wasm_from_config(self, ctx, make_context, config, gateway):
        config.multisig_wasm_path.write_bytes(WASM)
        ref = await _share(ctx, near(5))

        result = await ClaimProtocol(make_context(CLAIMER)).create_contract(ref, "multi.testnet")

        assert result.success
        assert gateway.accounts["multi.testnet"].contract_code == WASM

    async def test_missing_wasm(self, ctx, make_context, gateway):
        ref = await _share(ctx, near(5))
        with pytest.raises(ConfigurationError):
            await ClaimProtocol(make_context(CLAIMER)).create_contract(ref, "multi.testnet")
        assert gateway.calls_to("create_contract_and_claim") == []

    async def test_limited_drop_rejected(self, ctx, claims):
        ref = await _share(ctx, near(40), limited=True)
        with pytest.raises(ValidationError):
            await claims.create_contract(ref, "multi.testnet")


class TestUniformFailure:
    """Every variant fails the same way: notify, report, change nothing."""

    @pytest.mark.parametrize("variant,limited,account_id", [
        (ClaimVariant.CLAIM, False, CLAIMER),
        (ClaimVariant.CREATE_ACCOUNT, False, "carol.testnet"),
        (ClaimVariant.CREATE_MULTISIG, True, "vault.testnet"),
        (ClaimVariant.CREATE_CONTRACT, False, "multi.testnet"),
    ])
    async def test_unavailable_ledger(
        self, ctx, claims, claimer_port, store, gateway, credentials, variant, limited, account_id
    ):
        ref = await _share(ctx, near(40), limited=limited)
        before = await store.load(OWNER)
        gateway.unavailable = True

        result = await claims.claim(variant, ref, account_id)

        assert result.outcome is ClaimOutcome.UNAVAILABLE
        assert result.message == claimer_port.last_notification
        assert len(claimer_port.notifications) == 1
        assert await store.load(OWNER) == before
        assert credentials.list_accounts() == []


class TestReclaim:

    async def test_unknown_key(self, claims, claimer_port, gateway):
        result = await claims.reclaim("unknown_pk")

        assert result.outcome is ClaimOutcome.NOT_FOUND
        assert claimer_port.confirmations == []
        assert gateway.calls == []

    async def test_unknown_key_leaves_store_unchanged(self, ctx, store, gateway):
        await _share(ctx)
        before = await store.load(OWNER)
        calls = len(gateway.calls)

        result = await ClaimProtocol(ctx).reclaim("unknown_pk")

        assert result.outcome is ClaimOutcome.NOT_FOUND
        assert await store.load(OWNER) == before
        assert len(gateway.calls) == calls

    async def test_reclaim_returns_funds(self, ctx, decisions, store, gateway):
        ref = await _share(ctx, near(3))
        drop = (await store.load(OWNER))[0]
        before = gateway.accounts[OWNER].balance

        result = await ClaimProtocol(ctx).reclaim(drop.public_key)

        assert result.outcome is ClaimOutcome.CLAIMED
        assert await store.load(OWNER) == []
        assert gateway.accounts[OWNER].balance == before + ref.amount - LIMITS.ACCESS_KEY_ALLOWANCE
        assert result.balance == gateway.accounts[OWNER].balance
        assert decisions.confirmations[-1].startswith("Remove drop of 3.00 Ⓝ")

    async def test_already_claimed_is_pruned(self, ctx, claims, store):
        """Someone else got there first: the forced pass drops the dead key."""
        ref = await _share(ctx)
        await claims.claim_to_account(ref)
        drop = (await store.load(OWNER))[0]

        result = await ClaimProtocol(ctx).reclaim(drop.public_key)

        assert result.outcome is ClaimOutcome.REJECTED
        assert await store.load(OWNER) == []

    async def test_ledger_down_keeps_drop(self, ctx, store, gateway):
        await _share(ctx)
        drop = (await store.load(OWNER))[0]
        gateway.unavailable = True

        result = await ClaimProtocol(ctx).reclaim(drop.public_key)

        assert result.outcome is ClaimOutcome.UNAVAILABLE
        assert await store.load(OWNER) == [drop]

    async def test_declined(self, ctx, make_context, store, gateway):
        await _share(ctx)
        drop = (await store.load(OWNER))[0]

        result = await ClaimProtocol(make_context(OWNER, PresetDecisions(approve=False))).reclaim(
            drop.public_key
        )

        assert result.outcome is ClaimOutcome.CANCELLED
        assert await store.load(OWNER) == [drop]
        assert gateway.calls_to("claim") == []

    async def test_limited_drop_cannot_be_reclaimed(self, ctx, store):
        await _share(ctx, near(40), limited=True)
        drop = (await store.load(OWNER))[0]
        with pytest.raises(ValidationError):
            await ClaimProtocol(ctx).reclaim(drop.public_key)
