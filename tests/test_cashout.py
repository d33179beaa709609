from dataclasses import replace

import pytest

from localcoin.cashout import CashoutService, split_commission
from localcoin.errors import (
    AlreadyProcessedError,
    AuthorizationError,
    ChainServiceError,
    ChainTimeoutError,
    ConfigurationError,
    ConflictError,
    ValidationError,
)
from localcoin.models import Caller, CashoutStatus, Role


@pytest.fixture
def funded_merchant(ledger, marketplace):
    ledger.fund(marketplace.merchant_address, tokens_raw=20_000)
    return marketplace


def test_split_commission():
    assert split_commission(100.0, 0.05) == (5.0, 95.0)
    assert split_commission(100.0, 0.20) == (20.0, 80.0)


def test_create_request(cashout, funded_merchant):
    request = cashout.create_request(
        funded_merchant.merchant_id, 100.0, Caller(account_id=funded_merchant.merchant_id, role=Role.MERCHANT)
    )
    assert request.status == CashoutStatus.PENDING
    assert request.merchant_name == "Corner Bakery"
    assert request.merchant_wallet_address == funded_merchant.merchant_address


def test_create_request_for_another_merchant_is_forbidden(cashout, funded_merchant):
    with pytest.raises(AuthorizationError):
        cashout.create_request(funded_merchant.merchant_id, 10.0, Caller(account_id="m-2", role=Role.MERCHANT))


def test_process_pays_out_and_emails_breakdown(
    cashout, store, ledger, mailer, platform_address, funded_merchant
):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)

    result = cashout.process(request.id, Caller(account_id="admin", role=Role.ADMIN))

    assert result.commission == 5.0
    assert result.net_payout == 95.0
    assert ledger.token_balance(platform_address) == 10_000
    assert ledger.token_balance(funded_merchant.merchant_address) == 10_000
    assert ledger.account_payers[platform_address] == platform_address

    stored = cashout.get_request(request.id)
    assert stored.status == CashoutStatus.APPROVED
    assert stored.transaction_signature == result.transaction_signature
    assert stored.processed_at is not None

    assert len(mailer.sent) == 1
    email = mailer.sent[0]
    assert email["to"] == "shop@example.com"
    assert "5.00" in email["html"]
    assert "95.00" in email["html"]
    assert request.id in email["html"]


def test_processed_request_is_not_paid_twice(cashout, ledger, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    cashout.process(request.id)

    with pytest.raises(AlreadyProcessedError) as excinfo:
        cashout.process(request.id)
    assert excinfo.value.message == "Request already approved"
    assert len(ledger.transfers) == 1


def test_chain_failure_denies_request(cashout, ledger, mailer, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    ledger.fail_next = "Transaction simulation failed"

    with pytest.raises(ChainServiceError):
        cashout.process(request.id)

    stored = cashout.get_request(request.id)
    assert stored.status == CashoutStatus.DENIED
    assert stored.error == "Transaction simulation failed"
    assert stored.processed_at is not None
    assert mailer.sent == []

    with pytest.raises(AlreadyProcessedError):
        cashout.process(request.id)


def test_unconfirmed_transfer_leaves_request_pending(cashout, ledger, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    ledger.timeout_next = True

    with pytest.raises(ChainTimeoutError):
        cashout.process(request.id)

    stored = cashout.get_request(request.id)
    assert stored.status == CashoutStatus.PENDING
    assert stored.error
    with pytest.raises(ConflictError):
        cashout.process(request.id)


def test_missing_contact_email_denies_request(cashout, store, ledger, funded_merchant):
    merchant = store.get("merchants", funded_merchant.merchant_id)
    del merchant["contactEmail"]
    store.set("merchants", funded_merchant.merchant_id, merchant)
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)

    with pytest.raises(ValidationError):
        cashout.process(request.id)
    assert cashout.get_request(request.id).status == CashoutStatus.DENIED
    assert ledger.transfers == []


def test_only_admins_process(cashout, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    with pytest.raises(AuthorizationError):
        cashout.process(request.id, Caller(account_id=funded_merchant.merchant_id, role=Role.MERCHANT))
    assert cashout.get_request(request.id).status == CashoutStatus.PENDING


def test_unconfigured_platform_wallet_keeps_request_pending(
    settings, store, chain, wallets, mailer, funded_merchant
):
    service = CashoutService(replace(settings, platform_mnemonic=""), store, chain, wallets, mailer)
    request = service.create_request(funded_merchant.merchant_id, 100.0)

    with pytest.raises(ConfigurationError):
        service.process(request.id)
    assert service.get_request(request.id).status == CashoutStatus.PENDING


def test_release_unconfirmed_cashout_after_expiry(cashout, ledger, platform_address, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError) as excinfo:
        cashout.process(request.id)
    assert cashout.get_request(request.id).last_valid_block_height == excinfo.value.last_valid_block_height

    with pytest.raises(ConflictError):
        cashout.release(request.id)

    ledger.advance_blocks(excinfo.value.last_valid_block_height + 1)
    released = cashout.release(request.id)
    assert released.status == CashoutStatus.PENDING
    assert released.settlement_claim is None
    assert released.transaction_signature is None

    result = cashout.process(request.id)
    assert ledger.token_balance(platform_address) == 10_000
    assert cashout.get_request(request.id).transaction_signature == result.transaction_signature


def test_release_refuses_cashout_transfer_that_landed(cashout, ledger, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    ledger.timeout_next = True
    with pytest.raises(ChainTimeoutError) as excinfo:
        cashout.process(request.id)
    ledger.signatures.add(excinfo.value.signature)
    ledger.advance_blocks(1_000)

    with pytest.raises(ConflictError):
        cashout.release(request.id)


def test_token_account_setup_timeout_leaves_cashout_retryable(cashout, ledger, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    ledger.timeout_account_creation = True

    with pytest.raises(ChainTimeoutError):
        cashout.process(request.id)

    stored = cashout.get_request(request.id)
    assert stored.status == CashoutStatus.PENDING
    assert stored.settlement_claim is None
    assert stored.transaction_signature is None

    cashout.process(request.id)
    assert cashout.get_request(request.id).status == CashoutStatus.APPROVED


def test_release_is_admin_only(cashout, funded_merchant):
    request = cashout.create_request(funded_merchant.merchant_id, 100.0)
    with pytest.raises(AuthorizationError):
        cashout.release(request.id, Caller(account_id=funded_merchant.merchant_id, role=Role.MERCHANT))
    with pytest.raises(ValidationError):
        cashout.release(request.id)
