"""Unit tests for auth/store.py -- schema constraints and repository semantics.

Covers:
- live email/username uniqueness enforced by the schema (IntegrityError)
- soft-deleted rows are invisible to lookups and free their email/username
- one detail row per account
- (provider, subject) links are unique
- CodeStore.mark_expired is a compare-and-set
- expire_all_overdue only touches active, past-due rows
- swept-row lookups ignore codes that were redeemed (used_at set)
- update() rejects unknown field names
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Account, AccountDetail, ExternalAuthLink, SingleUseCode
from auth.store import CodeStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _account(email: str = "ada@example.com", username: str = "ada") -> Account:
    return Account(name="Ada", email=email, username=username, password_hash="$2b$04$x")


@pytest.fixture
def stored(account_store) -> Account:
    return account_store.create(_account())


# ---------------------------------------------------------------------------
# AccountStore
# ---------------------------------------------------------------------------


def test_create_assigns_id_and_created_at(stored):
    assert stored.id is not None and len(stored.id) == 32
    assert stored.created_at is not None


def test_lookups_return_none_when_missing(account_store):
    assert account_store.get_by_id("missing") is None
    assert account_store.get_by_email("missing@example.com") is None
    assert account_store.get_by_username("missing") is None


@pytest.mark.parametrize(
    "email,username",
    [("ada@example.com", "other"), ("other@example.com", "ada")],
)
def test_live_email_and_username_are_unique(account_store, stored, email, username):
    with pytest.raises(IntegrityError):
        account_store.create(_account(email, username))


def test_soft_deleted_row_is_hidden_and_frees_identifiers(account_store, stored):
    assert account_store.soft_delete(stored.id) is True
    assert account_store.get_by_id(stored.id) is None
    assert account_store.get_by_email("ada@example.com") is None
    assert account_store.soft_delete(stored.id) is False
    account_store.create(_account())
    assert len(account_store.list()) == 1
    assert len(account_store.list(include_deleted=True)) == 2


def test_update_flags_and_unknown_fields(account_store, stored):
    assert account_store.update(stored.id, is_email_verified=True) is True
    assert account_store.get_by_id(stored.id).is_email_verified is True
    assert account_store.update("missing", name="x") is False
    with pytest.raises(ValueError):
        account_store.update(stored.id, deleted_at="now")


def test_transaction_rolls_back_every_write(db, account_store, detail_store):
    with pytest.raises(IntegrityError):
        with db.transaction() as conn:
            first = account_store.create(_account(), conn=conn)
            detail_store.create(AccountDetail(account_id=first.id), conn=conn)
            account_store.create(_account("other@example.com", "ada"), conn=conn)
    assert account_store.list(include_deleted=True) == []


# ---------------------------------------------------------------------------
# AccountDetailStore
# ---------------------------------------------------------------------------


def test_one_detail_row_per_account(detail_store, stored):
    detail_store.create(AccountDetail(account_id=stored.id))
    with pytest.raises(IntegrityError):
        detail_store.create(AccountDetail(account_id=stored.id))


def test_detail_update_overwrites_fields(detail_store, stored):
    detail_store.create(AccountDetail(account_id=stored.id, city="Bandung"))
    assert detail_store.update(AccountDetail(account_id=stored.id, full_name="Ada")) is True
    detail = detail_store.get_by_account_id(stored.id)
    assert detail.full_name == "Ada"
    assert detail.city is None


# ---------------------------------------------------------------------------
# ExternalAuthStore
# ---------------------------------------------------------------------------


def test_provider_subject_is_unique(link_store, stored):
    link_store.create(ExternalAuthLink(account_id=stored.id, provider="google", subject="s1"))
    with pytest.raises(IntegrityError):
        link_store.create(ExternalAuthLink(account_id=stored.id, provider="google", subject="s1"))
    link = link_store.get_by_external_subject("google", "s1")
    assert link.account_id == stored.id
    assert link_store.get_by_external_subject("google", "s2") is None


# ---------------------------------------------------------------------------
# CodeStore
# ---------------------------------------------------------------------------


def test_unknown_code_kind(db):
    with pytest.raises(ValueError):
        CodeStore(db, "sms")


def test_mark_expired_is_compare_and_set(db, stored):
    codes = CodeStore(db, "email_verification")
    record = codes.create(SingleUseCode(account_id=stored.id, code=123456, expired_at=NOW))
    assert codes.mark_expired(record.id) is True
    assert codes.mark_expired(record.id) is False
    assert codes.get_active_by_code(123456) is None


def test_code_round_trips_due_time(db, stored):
    codes = CodeStore(db, "forgot_password")
    codes.create(SingleUseCode(account_id=stored.id, code=123456, expired_at=NOW))
    found = codes.get_active_by_account_and_code(stored.id, 123456)
    assert found.expired_at == NOW
    assert found.is_expired is False


def test_expire_all_overdue(db, stored):
    codes = CodeStore(db, "email_verification")
    codes.create(SingleUseCode(account_id=stored.id, code=111111, expired_at=NOW - timedelta(minutes=1)))
    codes.create(SingleUseCode(account_id=stored.id, code=222222, expired_at=NOW + timedelta(minutes=1)))
    assert codes.expire_all_overdue(NOW) == 1
    assert codes.get_active_by_code(111111) is None
    assert codes.get_active_by_code(222222) is not None


def test_swept_lookup_skips_redeemed_rows(db, stored):
    codes = CodeStore(db, "email_verification")
    swept = codes.create(SingleUseCode(account_id=stored.id, code=111111, expired_at=NOW - timedelta(minutes=1)))
    redeemed = codes.create(SingleUseCode(account_id=stored.id, code=222222, expired_at=NOW - timedelta(minutes=1)))
    assert codes.mark_expired(redeemed.id, used_at=NOW - timedelta(minutes=2)) is True
    codes.expire_all_overdue(NOW)
    found = codes.get_swept_by_account_and_code(stored.id, 111111, NOW)
    assert found.id == swept.id
    assert found.used_at is None
    assert codes.get_swept_by_code(222222, NOW) is None
    assert codes.get_swept_by_code(111111, NOW - timedelta(minutes=5)) is None


def test_delete_by_code_counts_rows(db, stored):
    codes = CodeStore(db, "email_verification")
    codes.create(SingleUseCode(account_id=stored.id, code=123456, expired_at=NOW))
    codes.create(SingleUseCode(account_id=stored.id, code=123456, expired_at=NOW))
    assert codes.delete_by_code(123456) == 2
    assert codes.delete_by_code(123456) == 0
