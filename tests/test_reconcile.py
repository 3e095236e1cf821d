import sqlite3

import pytest

from conftest import make_raw
from leadscout.core.errors import ReconciliationError
from leadscout.core.models import NgKeyword, Outcome
from leadscout.engine.reconcile import match_ng_keywords, normalize_raw, reconcile

T0 = "2026-02-10T00:00:00+00:00"
T1 = "2026-02-11T00:00:00+00:00"
T2 = "2026-02-12T00:00:00+00:00"


def test_new_record_is_inserted_with_timestamps(db):
    outcome = reconcile(db, make_raw(record_id="A", date_posted=""), now=T0)

    assert outcome is Outcome.INSERTED
    job = db.get_job("mynavi_A")
    assert job.scraped_at == T0
    assert job.last_checked_at == T0
    assert job.date_posted == "2026-02-10"
    assert job.source_record_id == "A"


def test_unchanged_record_only_touches_last_checked(db):
    raw = make_raw(record_id="A", salary_min=3000000, labels=["未経験OK"])
    reconcile(db, raw, now=T0)
    before = db.get_job("mynavi_A").to_dict()

    outcome = reconcile(db, raw, now=T1)

    after = db.get_job("mynavi_A").to_dict()
    assert outcome is Outcome.TOUCHED
    assert after.pop("last_checked_at") == T1
    before.pop("last_checked_at")
    assert after == before


def test_title_change_is_updated(db):
    reconcile(db, make_raw(record_id="X", title="A"), now=T0)

    outcome = reconcile(db, make_raw(record_id="X", title="B"), now=T1)

    job = db.get_job("mynavi_X")
    assert outcome is Outcome.UPDATED
    assert job.title == "B"
    assert job.last_checked_at == T1
    assert job.scraped_at == T0


def test_update_writes_every_significant_field(db):
    reconcile(db, make_raw(record_id="X"), now=T0)
    fresh = make_raw(
        record_id="X",
        salary_min=4000000,
        salary_max=6000000,
        description="新しい説明",
        date_expires="2099/3/31",
        is_active=False,
    )

    assert reconcile(db, fresh, now=T1) is Outcome.UPDATED

    job = db.get_job("mynavi_X")
    assert (job.salary_min, job.salary_max) == (4000000, 6000000)
    assert job.description == "新しい説明"
    assert job.date_expires == "2099-03-31"
    assert job.is_active is False


def test_non_significant_change_is_touch_only(db):
    reconcile(db, make_raw(record_id="X", benefits="社会保険完備"), now=T0)

    outcome = reconcile(db, make_raw(record_id="X", benefits="交通費支給"), now=T1)

    assert outcome is Outcome.TOUCHED
    assert db.get_job("mynavi_X").benefits == "社会保険完備"


def test_reconcile_is_idempotent(db):
    raw = make_raw(record_id="I", title="  法人営業\n（東京） ")
    assert reconcile(db, raw, now=T0) is Outcome.INSERTED
    once = db.get_job("mynavi_I").to_dict()

    assert reconcile(db, raw, now=T0) is Outcome.TOUCHED
    assert db.get_job("mynavi_I").to_dict() == once


def test_update_keeps_stored_date_posted_when_missing(db):
    reconcile(db, make_raw(record_id="D", date_posted="2026/1/5"), now=T0)

    reconcile(db, make_raw(record_id="D", date_posted="", title="changed"), now=T1)

    assert db.get_job("mynavi_D").date_posted == "2026-01-05"


def test_last_checked_never_moves_backwards(db):
    reconcile(db, make_raw(record_id="M"), now=T2)
    reconcile(db, make_raw(record_id="M"), now=T1)
    reconcile(db, make_raw(record_id="M", title="changed"), now=T0)

    assert db.get_job("mynavi_M").last_checked_at == T2


def test_same_id_on_different_sources_are_distinct(db):
    assert reconcile(db, make_raw(source="mynavi", record_id="1"), now=T0) is Outcome.INSERTED
    assert reconcile(db, make_raw(source="doda", record_id="1"), now=T0) is Outcome.INSERTED
    assert db.get_job("doda_1").source == "doda"


def test_expired_posting_is_stored_inactive(db):
    reconcile(db, make_raw(record_id="E", date_expires="2020-01-01"), now=T0)

    job = db.get_job("mynavi_E")
    assert job.is_active is False
    assert job.date_expires == "2020-01-01"


def test_ng_keywords_are_recorded_not_blocking(db):
    keywords = [
        NgKeyword("派遣", category="title"),
        NgKeyword("テスト", category="company"),
        NgKeyword("未経験.*歓迎", is_regex=True),
    ]
    raw = make_raw(record_id="N", title="派遣スタッフ", description="未経験の方も歓迎します")

    assert reconcile(db, raw, keywords, now=T0) is Outcome.INSERTED

    assert db.get_job("mynavi_N").ng_keyword_matches == ["派遣", "テスト", "未経験.*歓迎"]


def test_ng_keyword_category_limits_fields():
    raw = normalize_raw(make_raw(title="営業", company_name="派遣ネット株式会社"))

    assert match_ng_keywords(raw, [NgKeyword("派遣", category="title")]) == []
    assert match_ng_keywords(raw, [NgKeyword("派遣")]) == ["派遣"]


def test_invalid_regex_keyword_is_ignored():
    raw = normalize_raw(make_raw(title="営業(東京"))

    assert match_ng_keywords(raw, [NgKeyword("営業(", is_regex=True), NgKeyword("東京")]) == ["東京"]


def test_storage_error_is_retried_once(db, monkeypatch):
    calls = {"n": 0}
    original = db.get_job

    def flaky(record_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return original(record_id)

    monkeypatch.setattr(db, "get_job", flaky)

    assert reconcile(db, make_raw(record_id="R"), now=T0, retry_backoff_sec=0) is Outcome.INSERTED
    assert calls["n"] == 2


def test_persistent_storage_error_raises(db, monkeypatch):
    def broken(job):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "insert_job", broken)

    with pytest.raises(ReconciliationError) as exc:
        reconcile(db, make_raw(record_id="F"), now=T0, retry_backoff_sec=0)

    assert exc.value.record_id == "mynavi_F"
    monkeypatch.undo()
    assert db.get_job("mynavi_F") is None


def _full(record_id="P", **fields):
    data = dict(
        description="詳細ページの仕事内容",
        requirements="法人営業経験3年以上",
        date_expires="2099-12-31",
        locations=["東京都港区"],
    )
    data.update(fields)
    return make_raw(record_id=record_id, **data)


def test_card_only_record_keeps_detail_fields(db):
    reconcile(db, _full(), now=T0)
    card_only = make_raw(record_id="P", description="カードの抜粋", partial=True)

    assert reconcile(db, card_only, now=T1) is Outcome.TOUCHED

    job = db.get_job("mynavi_P")
    assert job.description == "詳細ページの仕事内容"
    assert job.requirements == "法人営業経験3年以上"
    assert job.date_expires == "2099-12-31"
    assert job.locations == ["東京都港区"]
    assert job.last_checked_at == T1


def test_card_only_title_change_updates_without_losing_detail(db):
    reconcile(db, _full(), now=T0)

    outcome = reconcile(db, make_raw(record_id="P", title="新タイトル", description="", partial=True), now=T1)

    job = db.get_job("mynavi_P")
    assert outcome is Outcome.UPDATED
    assert job.title == "新タイトル"
    assert job.description == "詳細ページの仕事内容"
    assert job.date_expires == "2099-12-31"


def test_removed_card_only_record_goes_inactive_and_keeps_description(db):
    reconcile(db, _full(), now=T0)

    outcome = reconcile(db, make_raw(record_id="P", description="", is_active=False, partial=True), now=T1)

    job = db.get_job("mynavi_P")
    assert outcome is Outcome.UPDATED
    assert job.is_active is False
    assert job.description == "詳細ページの仕事内容"


def test_card_only_record_fills_empty_stored_fields(db):
    reconcile(db, make_raw(record_id="Q", description="", partial=True), now=T0)

    assert reconcile(db, make_raw(record_id="Q", description="カードの抜粋", partial=True), now=T1) is Outcome.UPDATED
    assert db.get_job("mynavi_Q").description == "カードの抜粋"


def test_full_record_blank_field_keeps_stored_value(db):
    reconcile(db, _full(), now=T0)

    assert reconcile(db, _full(description="", date_expires=""), now=T1) is Outcome.TOUCHED
    job = db.get_job("mynavi_P")
    assert job.description == "詳細ページの仕事内容"
    assert job.date_expires == "2099-12-31"


def test_rank_is_stored_but_not_significant(db):
    reconcile(db, make_raw(record_id="K", budget_rank="b", rank_confidence=0.7), now=T0)
    job = db.get_job("mynavi_K")
    assert (job.budget_rank, job.rank_confidence) == ("B", 0.7)

    assert reconcile(db, make_raw(record_id="K", budget_rank="A", rank_confidence=0.9), now=T1) is Outcome.TOUCHED
    assert db.get_job("mynavi_K").budget_rank == "B"

    reconcile(db, make_raw(record_id="K", title="changed", budget_rank="A", rank_confidence=0.9), now=T2)
    assert db.get_job("mynavi_K").budget_rank == "A"


def test_unknown_rank_is_dropped():
    assert normalize_raw(make_raw(budget_rank="S")).budget_rank == ""
