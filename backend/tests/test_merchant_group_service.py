"""Tests for merchant group resolution, auto-grouping and curation."""

import pytest
from datetime import date
from decimal import Decimal
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
import uuid

from spendsense.database import Base, build_engine
from spendsense.exceptions import (
    AccountNotFoundError,
    GroupInUseError,
    InvalidInputError,
    InvalidThresholdError,
    MerchantGroupNotFoundError,
    StoreError,
)
from spendsense.models.account import Account
from spendsense.models.merchant import MerchantGroup, MerchantMapping
from spendsense.models.recurring import Frequency, RecurringPattern, TransactionType
from spendsense.models.transaction import Transaction
from spendsense.services import merchant_group_service
from spendsense.services.merchant_group_service import (
    AmbiguousLowConfidence,
    Resolved,
    Unresolved,
)

UTILITY = "CITY OF AUSTIN WATER UTILITY"
UTILITY_BILL = "CITY OF AUSTIN WATER UTILITY BILL"


class TestGetOrCreateGroup:
    """Test the idempotent group upsert."""

    def test_creates_group_and_mapping(self, db_session, sample_account):
        """A new pattern creates one automatic group and one mapping."""
        group, is_new = merchant_group_service.get_or_create_group(
            db_session, sample_account.id, "NETFLIX.COM 8882099918"
        )

        assert is_new
        assert group.display_name == "Netflix"
        assert group.canonical_pattern == "netflix"
        mapping = db_session.query(MerchantMapping).one()
        assert mapping.merchant_group_id == group.id
        assert mapping.raw_pattern == "NETFLIX.COM 8882099918"
        assert mapping.is_automatic
        assert mapping.usage_count == 1

    def test_same_pattern_reuses_group(self, db_session, sample_account):
        """Spellings that normalize alike resolve to the same group."""
        first, first_new = merchant_group_service.get_or_create_group(
            db_session, sample_account.id, "NETFLIX.COM 8882099918"
        )
        second, second_new = merchant_group_service.get_or_create_group(
            db_session, sample_account.id, "Netflix.com"
        )
        third, _ = merchant_group_service.get_or_create_group(
            db_session, sample_account.id, "NETFLIX   8882099918 CA"
        )

        assert first_new and not second_new
        assert first.id == second.id == third.id
        assert db_session.query(MerchantGroup).count() == 1
        mapping = db_session.query(MerchantMapping).one()
        assert mapping.usage_count == 3
        assert mapping.last_used_at is not None

    def test_similar_pattern_joins_existing_group(self, db_session, sample_account):
        """A new pattern close to a group representative joins that group."""
        group, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, UTILITY_BILL)
        joined, is_new = merchant_group_service.get_or_create_group(
            db_session, sample_account.id, UTILITY, threshold=0.8
        )

        assert not is_new
        assert joined.id == group.id
        assert db_session.query(MerchantMapping).count() == 2

    def test_accounts_are_isolated(self, db_session, sample_account, other_account):
        """The same description gets a separate group per account."""
        a, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "SPOTIFY")
        b, b_new = merchant_group_service.get_or_create_group(db_session, other_account.id, "SPOTIFY")

        assert b_new
        assert a.id != b.id

    def test_unresolvable_description(self, db_session, sample_account):
        """A description with no merchant signature is an input error."""
        with pytest.raises(InvalidInputError):
            merchant_group_service.get_or_create_group(db_session, sample_account.id, "POS DEBIT 123456")
        assert db_session.query(MerchantGroup).count() == 0

    def test_unknown_account(self, db_session):
        with pytest.raises(AccountNotFoundError):
            merchant_group_service.get_or_create_group(db_session, "missing", "NETFLIX")

    def test_invalid_threshold_rejected_before_writing(self, db_session, sample_account):
        with pytest.raises(InvalidThresholdError):
            merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX", threshold=0)
        assert db_session.query(MerchantMapping).count() == 0

    def test_ungrouped_mapping_is_not_relinked(self, db_session, sample_account):
        """A manually ungrouped pattern is never linked automatically again."""
        merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")
        mapping = db_session.query(MerchantMapping).one()
        merchant_group_service.set_mapping_group(db_session, sample_account.id, mapping.id, None)

        with pytest.raises(InvalidInputError):
            merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")

    def test_store_failure_is_retryable(self, db_session, sample_account, monkeypatch):
        """Connectivity failures surface as retryable store errors."""
        def boom(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(merchant_group_service, "_find_mapping", boom)
        with pytest.raises(StoreError) as exc_info:
            merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")
        assert exc_info.value.retryable


class TestConcurrentUpsert:
    """Test that racing callers converge on a single mapping."""

    @pytest.fixture
    def session_factory(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'race.sqlite'}", timeout_seconds=5)
        Base.metadata.create_all(bind=engine)
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
        engine.dispose()

    def test_loser_reads_back_winner(self, session_factory, monkeypatch):
        """Two callers resolving the same new pattern yield one group and one mapping."""
        setup = session_factory()
        account = Account(id=str(uuid.uuid4()), name="Race")
        setup.add(account)
        setup.commit()
        account_id = account.id
        setup.close()

        winner_session = session_factory()
        loser_session = session_factory()

        # The loser looked before the winner committed: it saw neither the
        # mapping nor the group, so it tries to insert both.
        real_find = merchant_group_service._find_mapping
        calls = {"count": 0}

        def stale_find(db, acct, canonical):
            if db is loser_session and calls["count"] == 0:
                calls["count"] += 1
                return None
            return real_find(db, acct, canonical)

        monkeypatch.setattr(merchant_group_service, "_find_mapping", stale_find)
        real_groups = merchant_group_service._account_groups
        monkeypatch.setattr(
            merchant_group_service, "_account_groups",
            lambda db, acct: [] if db is loser_session else real_groups(db, acct)
        )

        winner_group, winner_new = merchant_group_service.get_or_create_group(
            winner_session, account_id, "NETFLIX.COM 8882099918"
        )
        loser_group, loser_new = merchant_group_service.get_or_create_group(
            loser_session, account_id, "Netflix.com"
        )

        assert winner_new
        assert not loser_new
        assert loser_group.id == winner_group.id

        check = session_factory()
        assert check.query(MerchantGroup).count() == 1
        mapping = check.query(MerchantMapping).one()
        assert mapping.usage_count == 2
        check.close()
        winner_session.close()
        loser_session.close()


class TestResolveDescription:
    """Test the tagged resolution outcomes."""

    def test_resolved(self, db_session, sample_account):
        result = merchant_group_service.resolve_description(db_session, sample_account.id, "SPOTIFY USA")
        assert isinstance(result, Resolved)
        assert result.is_new
        assert result.confidence == 1.0
        assert result.group.display_name == "Spotify Usa"

    def test_empty_description_unresolved(self, db_session, sample_account):
        """Unresolvable input is an outcome, not an error."""
        result = merchant_group_service.resolve_description(db_session, sample_account.id, "   ")
        assert isinstance(result, Unresolved)
        assert result.reason == "empty"

    def test_ungrouped_unresolved(self, db_session, sample_account):
        merchant_group_service.resolve_description(db_session, sample_account.id, "HULU")
        mapping = db_session.query(MerchantMapping).one()
        merchant_group_service.set_mapping_group(db_session, sample_account.id, mapping.id, None)

        result = merchant_group_service.resolve_description(db_session, sample_account.id, "HULU")
        assert isinstance(result, Unresolved)
        assert result.reason == "ungrouped"

    def test_tie_is_ambiguous_and_goes_to_oldest_group(self, db_session, sample_account):
        """Two equally good groups: link to the first created, with low confidence."""
        first = merchant_group_service.create_group(db_session, sample_account.id, "Hulu")
        second = merchant_group_service.create_group(db_session, sample_account.id, "Hulu")
        first.created_at = first.created_at.replace(year=2000)
        db_session.commit()

        result = merchant_group_service.resolve_description(db_session, sample_account.id, "HULU")

        assert isinstance(result, AmbiguousLowConfidence)
        assert result.group.id == first.id
        assert {g.id for g in result.candidates} == {first.id, second.id}
        assert result.confidence == 0.5
        mapping = db_session.query(MerchantMapping).one()
        assert mapping.merchant_group_id == first.id

    def test_batch_reports_per_item(self, db_session, sample_account):
        results = merchant_group_service.resolve_descriptions(
            db_session, sample_account.id, ["NETFLIX.COM", "", "NETFLIX 8882099918 CA", "HULU"]
        )

        assert [type(r.resolution) for r in results] == [Resolved, Unresolved, Resolved, Resolved]
        assert results[0].resolution.group.id == results[2].resolution.group.id
        assert not results[2].resolution.is_new
        assert db_session.query(MerchantGroup).count() == 2

    def test_batch_invalid_threshold_rejects_whole_batch(self, db_session, sample_account):
        with pytest.raises(InvalidThresholdError):
            merchant_group_service.resolve_descriptions(db_session, sample_account.id, ["NETFLIX"], threshold=2)
        assert db_session.query(MerchantMapping).count() == 0


class TestLookup:
    """Test read-only lookup."""

    def test_lookup_existing(self, db_session, sample_account):
        group, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX.COM")
        found = merchant_group_service.lookup_group_for_description(
            db_session, sample_account.id, "NETFLIX 8882099918 CA"
        )
        assert found.id == group.id

    def test_lookup_missing_creates_nothing(self, db_session, sample_account):
        assert merchant_group_service.lookup_group_for_description(db_session, sample_account.id, "HULU") is None
        assert db_session.query(MerchantGroup).count() == 0

    def test_lookup_does_not_bump_usage(self, db_session, sample_account):
        merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX.COM")
        merchant_group_service.lookup_group_for_description(db_session, sample_account.id, "NETFLIX.COM")
        assert db_session.query(MerchantMapping).one().usage_count == 1


class TestAutoGroup:
    """Test account-wide auto-grouping."""

    def test_empty_account_dry_run(self, db_session, sample_account):
        """No descriptions gives an empty preview, not an error."""
        result = merchant_group_service.auto_group(db_session, sample_account.id, dry_run=True)
        assert result.clusters == []
        assert result.total_descriptions == 0
        assert result.applied is None

    def test_dry_run_writes_nothing(self, db_session, sample_account, add_transaction):
        add_transaction("NETFLIX.COM 8882099918", "-15.49", date(2024, 1, 5))
        add_transaction("Netflix.com", "-15.49", date(2024, 2, 5))
        add_transaction("SPOTIFY USA", "-9.99", date(2024, 2, 7))

        result = merchant_group_service.auto_group(db_session, sample_account.id, dry_run=True)

        assert result.total_descriptions == 3
        assert sorted(c.display_name for c in result.clusters) == ["Netflix", "Spotify Usa"]
        assert result.raw_samples["netflix"] in ("NETFLIX.COM 8882099918", "Netflix.com")
        assert db_session.query(MerchantGroup).count() == 0
        assert db_session.query(MerchantMapping).count() == 0

    def test_apply_creates_groups_and_mappings(self, db_session, sample_account, add_transaction):
        add_transaction(UTILITY_BILL, "-80.00", date(2024, 1, 5))
        add_transaction(UTILITY_BILL, "-80.00", date(2024, 2, 5))
        add_transaction(UTILITY, "-80.00", date(2024, 3, 5))
        add_transaction("HULU", "-7.99", date(2024, 3, 9))

        result = merchant_group_service.auto_group(db_session, sample_account.id, threshold=0.8)

        assert result.applied.groups_created == 2
        assert result.applied.mappings_created == 3
        assert result.applied.failed == 0
        utility = db_session.query(MerchantGroup).filter(
            MerchantGroup.canonical_pattern == "city of austin water utility bill"
        ).one()
        assert {m.canonical_pattern for m in utility.mappings} == {
            "city of austin water utility", "city of austin water utility bill"
        }

    def test_rerun_is_idempotent(self, db_session, sample_account, add_transaction):
        add_transaction("NETFLIX.COM", "-15.49", date(2024, 1, 5))
        merchant_group_service.auto_group(db_session, sample_account.id)
        second = merchant_group_service.auto_group(db_session, sample_account.id)

        assert second.applied.groups_created == 0
        assert second.applied.groups_reused == 1
        assert second.applied.mappings_created == 0
        assert db_session.query(MerchantGroup).count() == 1

    def test_manual_mappings_are_never_overwritten(self, db_session, sample_account, add_transaction):
        """Automatic runs skip mappings a user edited."""
        add_transaction("NETFLIX.COM", "-15.49", date(2024, 1, 5))
        merchant_group_service.auto_group(db_session, sample_account.id)
        custom = merchant_group_service.create_group(db_session, sample_account.id, "Streaming")
        mapping = db_session.query(MerchantMapping).one()
        merchant_group_service.set_mapping_group(db_session, sample_account.id, mapping.id, custom.id)

        result = merchant_group_service.auto_group(db_session, sample_account.id)

        assert result.applied.manual_skipped == 1
        db_session.refresh(mapping)
        assert mapping.merchant_group_id == custom.id
        assert not mapping.is_automatic

    def test_failed_cluster_does_not_abort_others(self, db_session, sample_account, add_transaction, monkeypatch):
        add_transaction("NETFLIX.COM", "-15.49", date(2024, 1, 5))
        add_transaction("HULU", "-7.99", date(2024, 1, 6))

        real_apply = merchant_group_service._apply_cluster

        def flaky(db, account_id, cluster, raw_samples, result):
            if cluster.representative == "hulu":
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_apply(db, account_id, cluster, raw_samples, result)

        monkeypatch.setattr(merchant_group_service, "_apply_cluster", flaky)
        result = merchant_group_service.auto_group(db_session, sample_account.id)

        assert result.applied.failed == 1
        assert result.applied.groups_created == 1
        assert len(result.applied.errors) == 1
        assert db_session.query(MerchantGroup).one().canonical_pattern == "netflix"


class TestBackfill:
    """Test linking historical transactions."""

    def test_links_known_descriptions_only(self, db_session, sample_account, add_transaction):
        group, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX.COM")
        add_transaction("NETFLIX 8882099918 CA", "-15.49", date(2024, 1, 5))
        add_transaction("Netflix.com", "-15.49", date(2024, 2, 5))
        add_transaction("UNKNOWN MERCHANT", "-3.00", date(2024, 2, 6))

        result = merchant_group_service.backfill_transaction_groups(db_session, sample_account.id)

        assert result.total == 3
        assert result.updated == 2
        assert result.skipped == 1
        assert result.errors == []
        linked = db_session.query(Transaction).filter(Transaction.merchant_group_id == group.id).count()
        assert linked == 2
        # Lookup only: no group for the unknown merchant
        assert db_session.query(MerchantGroup).count() == 1

    def test_nothing_to_backfill(self, db_session, sample_account):
        result = merchant_group_service.backfill_transaction_groups(db_session, sample_account.id)
        assert result.total == 0


class TestCuration:
    """Test manual group and mapping edits."""

    def test_create_manual_group(self, db_session, sample_account):
        group = merchant_group_service.create_group(db_session, sample_account.id, "  Corner Store ")
        assert group.display_name == "Corner Store"
        assert not group.is_automatic
        assert group.canonical_pattern == "corner store"

    def test_create_requires_name(self, db_session, sample_account):
        with pytest.raises(InvalidInputError):
            merchant_group_service.create_group(db_session, sample_account.id, "  ")

    def test_rename_is_display_only(self, db_session, sample_account, netflix_group):
        """Renaming leaves recurring pattern confidence untouched."""
        pattern = RecurringPattern(
            account_id=sample_account.id, merchant_group_id=netflix_group.id,
            transaction_type=TransactionType.expense, frequency=Frequency.monthly, interval_days=30,
            amount_min=Decimal("15.00"), amount_max=Decimal("16.00"), amount_typical=Decimal("15.50"),
            first_seen_date=date(2024, 1, 1), last_seen_date=date(2024, 3, 1),
            next_expected_date=date(2024, 4, 1), confidence_score=0.77, occurrence_count=3,
            transaction_ids=[],
        )
        db_session.add(pattern)
        db_session.commit()

        group = merchant_group_service.update_group(
            db_session, sample_account.id, netflix_group.id, {"display_name": "Netflix Premium"}
        )

        assert group.display_name == "Netflix Premium"
        assert group.canonical_pattern == "netflix"
        db_session.refresh(pattern)
        assert pattern.confidence_score == 0.77

    def test_update_unknown_global_merchant(self, db_session, sample_account, netflix_group):
        with pytest.raises(InvalidInputError):
            merchant_group_service.update_group(
                db_session, sample_account.id, netflix_group.id, {"global_merchant_id": "nope"}
            )

    def test_get_group_other_account(self, db_session, other_account, netflix_group):
        """Groups are only visible inside their own account."""
        with pytest.raises(MerchantGroupNotFoundError):
            merchant_group_service.get_group(db_session, other_account.id, netflix_group.id)

    def test_delete_refused_while_mapped(self, db_session, sample_account):
        group, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")
        with pytest.raises(GroupInUseError):
            merchant_group_service.delete_group(db_session, sample_account.id, group.id)

    def test_delete_unlinks_transactions(self, db_session, sample_account, add_transaction):
        group = merchant_group_service.create_group(db_session, sample_account.id, "Corner Store")
        txn = add_transaction("CORNER STORE", "-4.00", date(2024, 1, 1), group.id)

        merchant_group_service.delete_group(db_session, sample_account.id, group.id)

        db_session.refresh(txn)
        assert txn.merchant_group_id is None
        assert db_session.query(MerchantGroup).count() == 0

    def test_merge_moves_everything(self, db_session, sample_account, add_transaction):
        source, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NFLX")
        target, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")
        txn = add_transaction("NFLX", "-15.49", date(2024, 1, 1), source.id)

        merged = merchant_group_service.merge_groups(db_session, sample_account.id, source.id, target.id)

        assert merged.id == target.id
        assert db_session.query(MerchantGroup).count() == 1
        mappings = db_session.query(MerchantMapping).all()
        assert {m.merchant_group_id for m in mappings} == {target.id}
        nflx = next(m for m in mappings if m.canonical_pattern == "nflx")
        assert not nflx.is_automatic
        db_session.refresh(txn)
        assert txn.merchant_group_id == target.id

    def test_merge_into_self(self, db_session, sample_account, netflix_group):
        with pytest.raises(InvalidInputError):
            merchant_group_service.merge_groups(db_session, sample_account.id, netflix_group.id, netflix_group.id)

    def test_regroup_marks_manual(self, db_session, sample_account):
        merchant_group_service.get_or_create_group(db_session, sample_account.id, "HULU")
        other = merchant_group_service.create_group(db_session, sample_account.id, "Streaming")
        mapping = db_session.query(MerchantMapping).one()

        updated = merchant_group_service.set_mapping_group(db_session, sample_account.id, mapping.id, other.id)

        assert updated.merchant_group_id == other.id
        assert not updated.is_automatic

    def test_list_mappings_by_group(self, db_session, sample_account):
        netflix, _ = merchant_group_service.get_or_create_group(db_session, sample_account.id, "NETFLIX")
        merchant_group_service.get_or_create_group(db_session, sample_account.id, "HULU")

        mappings = merchant_group_service.get_mappings(db_session, sample_account.id, netflix.id)
        assert [m.canonical_pattern for m in mappings] == ["netflix"]
