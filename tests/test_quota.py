from datetime import timedelta

from app.core.database import utcnow
from app.models.usage import UsageRecord
from app.services.quota import UsageQuotaService


def test_zero_limit_always_allows(db_session):
    quota = UsageQuotaService(db_session, limit=0, window_days=7)

    assert quota.try_consume("user-1").allowed


def test_limit_reached_after_commits(db_session):
    quota = UsageQuotaService(db_session, limit=2, window_days=7)

    assert quota.try_consume("user-1").remaining == 2
    quota.commit("user-1", "gen_a")
    quota.commit("user-1", "gen_b")

    decision = quota.try_consume("user-1")
    assert not decision.allowed
    assert decision.remaining == 0
    assert quota.try_consume("user-2").allowed


def test_commit_is_counted_once_per_job(db_session):
    quota = UsageQuotaService(db_session, limit=5, window_days=7)

    assert quota.commit("user-1", "gen_a") is True
    assert quota.commit("user-1", "gen_a") is False

    assert quota.used("user-1") == 1


def test_usage_outside_window_is_ignored(db_session):
    db_session.add(UsageRecord(owner_id="user-1", job_id="gen_old", created_at=utcnow() - timedelta(days=8)))
    db_session.commit()
    quota = UsageQuotaService(db_session, limit=1, window_days=7)

    assert quota.try_consume("user-1").allowed
