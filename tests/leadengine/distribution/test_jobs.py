"""Tests for leadengine.distribution.jobs — batch jobs with per-lead isolation."""
import logging
from datetime import datetime, timedelta

import pytest
from unittest.mock import patch

from leadengine.distribution.errors import DependencyUnavailable
from leadengine.distribution.events import EventEmitter
from leadengine.distribution.policy import get_policy
from leadengine.distribution.jobs import (
    distribute_pending_leads, sweep_expired_reservations, recalculate_rankings,
    cleanup_terminal_leads, run_expiry_sweep_job, JOB_FUNCTIONS,
)
from leadengine.models.assignment_log import LeadAssignmentLog
from leadengine.models.lead import Lead
from leadengine.models.realtor_score import ScoreHistory
from leadengine.services.score_store import RealtorScoreStore

T0 = datetime(2026, 10, 1, 9, 0, 0)


@pytest.fixture
def quiet():
    """Emitter with no subscribers, for tests that only look at lead rows."""
    return EventEmitter()


@pytest.fixture
def team(make_team, make_property):
    make_team('team-1', {'realtor-a': 'REALTOR', 'realtor-b': 'REALTOR', 'realtor-c': 'REALTOR'})
    make_property('prop-1', team_id='team-1')


def _lead(db_session, lead_id):
    return db_session.get(Lead, lead_id, populate_existing=True)


# ---------------------------------------------------------------------------
# Distribute
# ---------------------------------------------------------------------------

class TestDistributePendingLeads:

    def test_reserves_each_waiting_lead_to_a_different_realtor(self, db_session, team, make_lead, quiet):
        make_lead('lead-1', created_at=T0)
        make_lead('lead-2', created_at=T0 + timedelta(seconds=5))
        result = distribute_pending_leads(now=T0 + timedelta(minutes=1), emitter=quiet)
        assert result.processed == 2
        assert result.succeeded == 2
        holders = {_lead(db_session, lid).reserved_realtor_id for lid in ('lead-1', 'lead-2')}
        assert len(holders) == 2

    def test_oldest_lead_goes_first_when_realtors_are_scarce(self, db_session, make_team, make_property,
                                                             make_lead, quiet):
        make_team('team-1', {'solo': 'REALTOR'})
        make_property('prop-1', team_id='team-1')
        make_lead('newer', created_at=T0 + timedelta(minutes=1))
        make_lead('older', created_at=T0)
        result = distribute_pending_leads(now=T0 + timedelta(minutes=2), emitter=quiet)
        assert _lead(db_session, 'older').status == 'RESERVED'
        assert _lead(db_session, 'newer').status == 'UNASSIGNED'
        assert result.meta['outcomes'] == {'APPLIED': 1, 'WAITING': 1}

    def test_waiting_leads_do_not_starve_newer_ones(self, db_session, make_team, make_property,
                                                    make_lead, quiet):
        make_team('team-1', {'solo': 'REALTOR'})
        make_team('team-2', {'idle': 'REALTOR'})
        make_property('prop-1', team_id='team-1')
        make_property('prop-2', team_id='team-2')
        make_lead('held', created_at=T0, status='RESERVED', reserved_realtor_id='solo',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10), version=1)
        make_lead('waiting-1', created_at=T0 + timedelta(seconds=1))
        make_lead('waiting-2', created_at=T0 + timedelta(seconds=2))
        make_lead('fresh', property_id='prop-2', created_at=T0 + timedelta(seconds=3))
        policy = get_policy({'jobs': {'batch_size': 2}})

        result = distribute_pending_leads(now=T0 + timedelta(minutes=1), emitter=quiet, policy=policy)

        assert _lead(db_session, 'fresh').reserved_realtor_id == 'idle'
        assert result.processed == 3
        assert result.meta['outcomes'] == {'WAITING': 2, 'APPLIED': 1}

    def test_pages_through_leads_created_at_the_same_instant(self, db_session, team, make_lead, quiet):
        for lead_id in ('lead-1', 'lead-2', 'lead-3'):
            make_lead(lead_id, created_at=T0)
        policy = get_policy({'jobs': {'batch_size': 1}})
        result = distribute_pending_leads(now=T0, emitter=quiet, policy=policy)
        assert result.processed == 3
        assert sorted(result.lead_ids) == ['lead-1', 'lead-2', 'lead-3']

    def test_running_twice_changes_nothing_more(self, db_session, team, make_lead, quiet):
        make_lead('lead-1')
        first = distribute_pending_leads(now=T0, emitter=quiet)
        snapshot = _lead(db_session, 'lead-1').to_dict()
        second = distribute_pending_leads(now=T0, emitter=quiet)
        assert first.succeeded == 1
        assert second.processed == 0
        assert _lead(db_session, 'lead-1').to_dict() == snapshot

    def test_restricted_to_given_leads(self, db_session, team, make_lead, quiet):
        make_lead('lead-1')
        make_lead('lead-2')
        result = distribute_pending_leads(lead_ids=['lead-2'], now=T0, emitter=quiet)
        assert result.lead_ids == ['lead-2']
        assert _lead(db_session, 'lead-1').status == 'UNASSIGNED'

    def test_skips_terminal_pipeline_stage(self, db_session, team, make_lead, quiet):
        make_lead('lead-1', pipeline_stage='WON')
        assert distribute_pending_leads(now=T0, emitter=quiet).processed == 0

    def test_corrupt_lead_is_alerted_and_left_alone(self, db_session, team, make_lead, quiet, caplog):
        make_lead('bad', created_at=T0, reserved_realtor_id='realtor-a', reserved_until=T0)
        make_lead('good', created_at=T0 + timedelta(seconds=1))
        with patch('leadengine.distribution.jobs.notify_invariant_violation') as mock_alert, \
             caplog.at_level(logging.CRITICAL, logger='distribution.jobs'):
            result = distribute_pending_leads(now=T0 + timedelta(minutes=1), emitter=quiet)

        assert result.failed == 1
        assert result.succeeded == 1
        mock_alert.assert_called_once()
        assert mock_alert.call_args[0][0] == 'bad'
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert [(r.lead_id, r.job) for r in critical] == [('bad', 'distribute')]
        bad = _lead(db_session, 'bad')
        assert bad.status == 'UNASSIGNED'
        assert bad.reserved_realtor_id == 'realtor-a'
        assert bad.version == 0

    def test_corrupt_lead_alerts_once_across_ticks(self, db_session, team, make_lead, quiet, caplog):
        make_lead('bad', created_at=T0, reserved_realtor_id='realtor-a', reserved_until=T0)
        with patch('leadengine.services.notifications.SLACK_WEBHOOK_URL', 'https://hooks.slack.test/x'), \
             patch('leadengine.services.notifications.requests.post') as mock_post, \
             caplog.at_level(logging.CRITICAL, logger='distribution.jobs'):
            for minute in (1, 3, 5):
                result = distribute_pending_leads(now=T0 + timedelta(minutes=minute), emitter=quiet)
                assert result.failed == 1

        assert mock_post.call_count == 1
        assert len([r for r in caplog.records if r.levelno == logging.CRITICAL]) == 3
        assert _lead(db_session, 'bad').version == 0

    def test_unavailable_score_store_skips_only_that_lead(self, db_session, team, make_lead, quiet):
        make_lead('lead-1', created_at=T0)
        make_lead('lead-2', created_at=T0 + timedelta(seconds=1))
        real_get_many = RealtorScoreStore.get_many
        calls = {'n': 0}

        def flaky(self, ids):
            calls['n'] += 1
            if calls['n'] == 1:
                raise DependencyUnavailable('score_store', 'connection reset')
            return real_get_many(self, ids)

        with patch.object(RealtorScoreStore, 'get_many', flaky):
            result = distribute_pending_leads(now=T0, emitter=quiet)

        assert result.skipped == 1
        assert result.succeeded == 1
        assert _lead(db_session, 'lead-1').status == 'UNASSIGNED'
        assert _lead(db_session, 'lead-2').status == 'RESERVED'

    def test_unexpected_error_is_contained(self, db_session, team, make_lead, quiet):
        make_lead('lead-1', created_at=T0)
        make_lead('lead-2', created_at=T0 + timedelta(seconds=1))
        from leadengine.distribution import reservations
        real = reservations.evaluate_eligibility
        calls = {'n': 0}

        def boom(*args, **kwargs):
            calls['n'] += 1
            if calls['n'] == 1:
                raise RuntimeError('kaboom')
            return real(*args, **kwargs)

        with patch('leadengine.distribution.reservations.evaluate_eligibility', side_effect=boom):
            result = distribute_pending_leads(now=T0, emitter=quiet)

        assert result.failed == 1
        assert result.succeeded == 1
        assert 'kaboom' in result.errors[0]

    def test_full_emitter_records_events_and_publishes(self, db_session, team, make_lead, fake_redis):
        from leadengine.models.lead_event import LeadEvent
        make_lead('lead-1')
        distribute_pending_leads(now=T0)
        event = db_session.query(LeadEvent).one()
        assert event.type == 'RESERVED'
        assert ('leads:board' in [c for c, _ in fake_redis.published])


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

class TestSweepExpiredReservations:

    def test_releases_only_lapsed(self, db_session, team, make_lead, quiet):
        make_lead('lapsed', status='RESERVED', reserved_realtor_id='realtor-a',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10))
        make_lead('live', status='RESERVED', reserved_realtor_id='realtor-b',
                  reserved_at=T0 + timedelta(minutes=5), reserved_until=T0 + timedelta(minutes=15))
        result = sweep_expired_reservations(now=T0 + timedelta(minutes=10, seconds=1), emitter=quiet)
        assert result.lead_ids == ['lapsed']
        lapsed = _lead(db_session, 'lapsed')
        assert lapsed.status == 'UNASSIGNED'
        assert lapsed.rejected_realtor_ids == ['realtor-a']
        assert _lead(db_session, 'live').status == 'RESERVED'

    def test_second_sweep_is_noop(self, db_session, team, make_lead, quiet):
        make_lead('lapsed', status='RESERVED', reserved_realtor_id='realtor-a',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10))
        now = T0 + timedelta(minutes=11)
        sweep_expired_reservations(now=now, emitter=quiet)
        again = sweep_expired_reservations(now=now, emitter=quiet)
        assert again.processed == 0
        assert _lead(db_session, 'lapsed').rejected_realtor_ids == ['realtor-a']

    def test_expiry_costs_points(self, db_session, team, make_lead, make_score):
        make_score('realtor-a', points=20)
        make_lead('lapsed', status='RESERVED', reserved_realtor_id='realtor-a',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10))
        sweep_expired_reservations(now=T0 + timedelta(minutes=11))
        from leadengine.models.realtor_score import RealtorScore
        row = db_session.get(RealtorScore, 'realtor-a', populate_existing=True)
        assert row.points == 12
        assert row.leads_expired == 1

    def test_rq_entry_enqueues_rerouting(self, db_session, team, make_lead, mock_queue):
        make_lead('lapsed', status='RESERVED', reserved_realtor_id='realtor-a',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10))
        with patch('leadengine.distribution.jobs.utcnow', return_value=T0 + timedelta(minutes=11)):
            summary = run_expiry_sweep_job()
        assert summary['lead_ids'] == ['lapsed']
        mock_queue.enqueue.assert_called_once()
        assert mock_queue.enqueue.call_args[0][1] == ['lapsed']

    def test_rq_entry_without_releases_enqueues_nothing(self, mock_queue):
        run_expiry_sweep_job()
        mock_queue.enqueue.assert_not_called()


# ---------------------------------------------------------------------------
# Ranking recalculation
# ---------------------------------------------------------------------------

class TestRecalculateRankings:

    def test_refreshes_waiting_leads_only(self, db_session, team, make_lead, make_score):
        make_score('realtor-c', avg_rating=5.0, total_ratings=40)
        make_lead('waiting')
        make_lead('held', status='RESERVED', reserved_realtor_id='realtor-a',
                  reserved_at=T0, reserved_until=T0 + timedelta(minutes=10))
        result = recalculate_rankings(now=T0)
        assert result.lead_ids == ['waiting']
        waiting = _lead(db_session, 'waiting')
        assert waiting.status == 'UNASSIGNED'
        assert waiting.ranked_at == T0
        assert waiting.candidate_ranking[0]['realtor_id'] == 'realtor-c'
        assert _lead(db_session, 'held').candidate_ranking is None

    def test_new_team_member_appears_on_next_pass(self, db_session, team, make_lead, make_realtor):
        from leadengine.models.realtor import TeamMember
        make_lead('waiting')
        recalculate_rankings(now=T0)
        make_realtor('realtor-new')
        db_session.add(TeamMember(team_id='team-1', realtor_id='realtor-new', role='REALTOR'))
        db_session.commit()
        recalculate_rankings(now=T0 + timedelta(minutes=10))
        ids = [c['realtor_id'] for c in _lead(db_session, 'waiting').candidate_ranking]
        assert 'realtor-new' in ids


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

class TestCleanupTerminalLeads:

    def test_clears_ranking_cache_on_old_terminal_leads(self, db_session, make_lead):
        now = T0 + timedelta(hours=25)
        ranking = [{'realtor_id': 'realtor-a', 'score': 4.5, 'last_assigned_at': None}]
        make_lead('old', status='ACCEPTED', assigned_realtor_id='realtor-a', terminal_at=T0,
                  candidate_ranking=ranking, ranked_at=T0)
        make_lead('recent', status='EXHAUSTED', terminal_at=now - timedelta(hours=1),
                  candidate_ranking=[], ranked_at=now - timedelta(hours=1))
        make_lead('lost', pipeline_stage='LOST', updated_at=T0, candidate_ranking=ranking, ranked_at=T0)

        result = cleanup_terminal_leads(now=now)

        assert sorted(result.lead_ids) == ['lost', 'old']
        old = _lead(db_session, 'old')
        assert old.candidate_ranking is None
        assert old.ranked_at is None
        assert old.status == 'ACCEPTED'
        assert old.assigned_realtor_id == 'realtor-a'
        assert _lead(db_session, 'recent').ranked_at is not None

    def test_prunes_old_score_history_but_keeps_audit_log(self, db_session, make_lead):
        make_lead('lead-1', status='ACCEPTED', assigned_realtor_id='realtor-a', terminal_at=T0)
        db_session.add(LeadAssignmentLog(lead_id='lead-1', to_realtor_id='realtor-a', reason='ACCEPTED',
                                         created_at=T0 - timedelta(days=400)))
        db_session.add(ScoreHistory(realtor_id='realtor-a', action='RATING_5_STARS', points=15,
                                    created_at=T0 - timedelta(days=31)))
        db_session.add(ScoreHistory(realtor_id='realtor-a', action='RATING_4_STARS', points=10,
                                    created_at=T0 - timedelta(days=2)))
        db_session.commit()

        result = cleanup_terminal_leads(now=T0)

        assert result.meta['score_history_pruned'] == 1
        assert [h.action for h in db_session.query(ScoreHistory).all()] == ['RATING_4_STARS']
        assert db_session.query(LeadAssignmentLog).count() == 1


class TestJobRegistry:

    def test_every_recurring_job_has_an_entry_point(self):
        from leadengine.config import RECURRING_JOBS
        assert set(JOB_FUNCTIONS) == set(RECURRING_JOBS)
        assert all(callable(fn) for fn in JOB_FUNCTIONS.values())
