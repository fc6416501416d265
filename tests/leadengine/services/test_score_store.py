"""Tests for leadengine.services.score_store — reads for ranking, writes from ratings/activity."""
from datetime import datetime

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import OperationalError

from leadengine.distribution.base import LeadStateChange
from leadengine.distribution.errors import DependencyUnavailable
from leadengine.models.realtor_score import RealtorScore, ScoreHistory
from leadengine.services.score_store import RealtorScoreStore, record_activity

T0 = datetime(2026, 10, 1, 9, 0, 0)


@pytest.fixture
def store(db_session):
    return RealtorScoreStore(db_session)


def _change(reason, realtor_id='realtor-a', **meta):
    return LeadStateChange(lead_id='lead-1', from_state='RESERVED', to_state='ACCEPTED',
                           reason=reason, realtor_id=realtor_id, occurred_at=T0, meta=meta)


class TestReads:

    def test_unknown_realtor_is_neutral(self, store):
        snap = store.get('nobody')
        assert snap.avg_rating is None
        assert snap.total_ratings == 0
        assert snap.points == 0
        assert snap.acceptance_rate is None

    def test_get_many_fills_gaps(self, store, make_score):
        make_score('realtor-a', avg_rating=4.5, total_ratings=8, points=40)
        scores = store.get_many(['realtor-a', 'realtor-b'])
        assert scores['realtor-a'].avg_rating == 4.5
        assert scores['realtor-a'].points == 40
        assert scores['realtor-b'].total_ratings == 0

    def test_acceptance_rate(self, store, make_score):
        row = make_score('realtor-a')
        row.leads_accepted, row.leads_rejected = 3, 1
        store.session.commit()
        assert store.get('realtor-a').acceptance_rate == 0.75

    def test_global_prior_shrinks_toward_configured_mean(self, store, make_score):
        make_score('realtor-a', avg_rating=5.0, total_ratings=3)
        make_score('realtor-b', avg_rating=3.0, total_ratings=1)
        # 5 pseudo-ratings at 4.0 plus 3×5.0 + 1×3.0
        assert store.global_prior() == pytest.approx(38 / 9)

    def test_global_prior_falls_back_to_policy(self, store):
        assert store.global_prior() == 4.0

    def test_single_rated_realtor_outranks_unrated(self, store, make_score):
        from leadengine.distribution.ranking import rank
        make_score('veteran', avg_rating=5.0, total_ratings=40)
        ids = ['newbie-1', 'newbie-2', 'veteran']
        ranked = rank(ids, store.get_many(ids), store.policy, prior_mean=store.global_prior())
        assert ranked[0].realtor_id == 'veteran'
        assert ranked[0].score > ranked[1].score

    def test_database_failure_is_dependency_unavailable(self):
        session = MagicMock()
        session.query.side_effect = OperationalError('SELECT', {}, Exception('gone'))
        with pytest.raises(DependencyUnavailable) as exc_info:
            RealtorScoreStore(session).get_many(['realtor-a'])
        assert exc_info.value.dependency == 'score_store'


class TestApplyRating:

    def test_updates_running_average_and_points(self, store, db_session):
        store.apply_rating('realtor-a', 5)
        row = store.apply_rating('realtor-a', 3)
        assert row.total_ratings == 2
        assert row.avg_rating == pytest.approx(4.0)
        assert row.points == 20
        actions = [h.action for h in db_session.query(ScoreHistory).order_by(ScoreHistory.id)]
        assert actions == ['RATING_5_STARS', 'RATING_3_STARS']

    def test_two_stars_change_nothing_but_average(self, store, db_session):
        row = store.apply_rating('realtor-a', 2)
        assert row.points == 0
        assert db_session.query(ScoreHistory).count() == 0

    def test_one_star_never_drops_below_zero(self, store, db_session):
        row = store.apply_rating('realtor-a', 1)
        assert row.points == 0
        assert db_session.query(ScoreHistory).one().action == 'RATING_1_STAR'

    @pytest.mark.parametrize('stars', [0, 6, 4.5, None])
    def test_rejects_out_of_range(self, store, stars):
        with pytest.raises(ValueError):
            store.apply_rating('realtor-a', stars)


class TestAdjustPoints:

    def test_manual_adjustment(self, store):
        assert store.adjust_points('realtor-a', 30, 'ADMIN_ADJUSTMENT', 'Migration credit') == 30
        assert store.adjust_points('realtor-a', -50, 'ADMIN_ADJUSTMENT') == 0


class TestRecordActivity:

    def test_fast_accept(self, store):
        store.record_activity(_change('ACCEPTED', response_minutes=2))
        row = store.session.get(RealtorScore, 'realtor-a')
        assert row.leads_accepted == 1
        assert row.points == 5
        assert row.avg_response_minutes == 2
        assert row.last_assigned_at == T0

    def test_slow_accept_no_bonus(self, store):
        store.record_activity(_change('ACCEPTED', response_minutes=8))
        assert store.session.get(RealtorScore, 'realtor-a').points == 0

    def test_reject_counts_without_penalty(self, store, make_score):
        make_score('realtor-a', points=10)
        store.record_activity(_change('REJECTED'))
        row = store.session.get(RealtorScore, 'realtor-a', populate_existing=True)
        assert row.leads_rejected == 1
        assert row.points == 10

    def test_expiry_penalty(self, store, make_score):
        make_score('realtor-a', points=10)
        store.record_activity(_change('EXPIRED'))
        row = store.session.get(RealtorScore, 'realtor-a', populate_existing=True)
        assert row.leads_expired == 1
        assert row.points == 2

    def test_force_assign_marks_assignment_time(self, store):
        store.record_activity(_change('FORCE_ASSIGNED'))
        row = store.session.get(RealtorScore, 'realtor-a')
        assert row.last_assigned_at == T0
        assert row.leads_accepted == 0

    def test_no_realtor_is_ignored(self, store, db_session):
        store.record_activity(_change('EXHAUSTED', realtor_id=None))
        assert db_session.query(RealtorScore).count() == 0

    def test_module_subscriber(self, db_session):
        record_activity(_change('ACCEPTED', response_minutes=1))
        assert db_session.get(RealtorScore, 'realtor-a').leads_accepted == 1
