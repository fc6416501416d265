#!/usr/bin/env python3
"""
Seed demo data for exercising lead distribution locally.

Creates two teams with realtors, scores and listings, then registers a batch
of leads so the next distribution tick reserves them:
  1. Team with a clear ranking (high / mid / unrated realtors)
  2. Team whose only realtors are suspended or assistants → leads exhaust
  3. Property with no team → offered to the realtor who captured it

Usage:
    python scripts/seed_demo_data.py          # seed all scenarios
    python scripts/seed_demo_data.py --clear  # wipe seeded data first

Requires: DATABASE_URL set (or defaults to sqlite:///local.db). Redis is
optional; without it registration still commits and the enqueue is skipped.
"""
import sys
import os
import uuid
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from leadengine import create_app
from leadengine.database import get_session, engine, Base
from leadengine.distribution import service
from leadengine.models.assignment_log import LeadAssignmentLog
from leadengine.models.lead import Lead
from leadengine.models.lead_event import LeadEvent
from leadengine.models.property import Property
from leadengine.models.realtor import Realtor, Team, TeamMember
from leadengine.models.realtor_score import RealtorScore, ScoreHistory


# ── Fake realtors ────────────────────────────────────────────────────────────

# id suffix, name, status, (avg_rating, total_ratings, points)
HARBOR_TEAM = [
    ('ana',    'Ana Ribeiro',   'ACTIVE', (4.8, 40, 310), 'OWNER'),
    ('bruno',  'Bruno Costa',   'ACTIVE', (4.4, 22, 120), 'REALTOR'),
    ('carla',  'Carla Mendes',  'ACTIVE', (3.9, 9, 45),   'REALTOR'),
    ('diego',  'Diego Alves',   'ACTIVE', None,           'REALTOR'),
    ('elisa',  'Elisa Prado',   'ACTIVE', (4.6, 12, 80),  'ASSISTANT'),
]

HILLTOP_TEAM = [
    ('fabio',  'Fabio Nunes',   'SUSPENDED', (4.1, 5, 20), 'OWNER'),
    ('gisele', 'Gisele Rocha',  'ACTIVE',    None,         'ASSISTANT'),
]

# Prefix for seeded IDs so we can clear them
SEED_PREFIX = 'seed-'


def make_id(kind):
    return f'{SEED_PREFIX}{kind}-{uuid.uuid4().hex[:8]}'


def _make_team(session, slug, name, members):
    team_id = f'{SEED_PREFIX}team-{slug}'
    owner_id = None
    session.add(Team(id=team_id, name=name))
    for suffix, full_name, status, score, role in members:
        realtor_id = f'{SEED_PREFIX}{suffix}'
        session.add(Realtor(id=realtor_id, name=full_name, email=f'{suffix}@example.com', status=status))
        session.add(TeamMember(team_id=team_id, realtor_id=realtor_id, role=role))
        if role == 'OWNER':
            owner_id = realtor_id
        if score:
            avg, total, points = score
            session.add(RealtorScore(
                realtor_id=realtor_id, avg_rating=avg, total_ratings=total, points=points,
                leads_accepted=0, leads_rejected=0, leads_expired=0, total_response_minutes=0,
            ))
    session.flush()
    session.get(Team, team_id).owner_id = owner_id
    return team_id


def _make_leads(session, property_id, count):
    lead_ids = []
    for _ in range(count):
        lead_id = make_id('lead')
        session.add(Lead(id=lead_id, property_id=property_id, rejected_realtor_ids=[], version=0))
        lead_ids.append(lead_id)
    return lead_ids


# ── Scenarios ────────────────────────────────────────────────────────────────

def seed_ranked_team(session):
    """Scenario 1: ranking decides who gets each lead first."""
    team_id = _make_team(session, 'harbor', 'Harbor Realty', HARBOR_TEAM)
    property_id = f'{SEED_PREFIX}prop-harbor'
    session.add(Property(id=property_id, title='2BR by the marina', team_id=team_id,
                         capturer_realtor_id=f'{SEED_PREFIX}bruno'))
    lead_ids = _make_leads(session, property_id, 4)
    print(f'  [1] Ranked team:    {team_id} ({len(lead_ids)} leads)')
    return lead_ids


def seed_exhausted_team(session):
    """Scenario 2: nobody eligible, leads go straight to the manual queue."""
    team_id = _make_team(session, 'hilltop', 'Hilltop Homes', HILLTOP_TEAM)
    property_id = f'{SEED_PREFIX}prop-hilltop'
    session.add(Property(id=property_id, title='Farmhouse with orchard', team_id=team_id))
    lead_ids = _make_leads(session, property_id, 2)
    print(f'  [2] Exhausted team: {team_id} ({len(lead_ids)} leads)')
    return lead_ids


def seed_teamless_property(session):
    """Scenario 3: listing without a team → only its capturer is a candidate."""
    property_id = f'{SEED_PREFIX}prop-open'
    session.add(Property(id=property_id, title='Studio downtown', capturer_realtor_id=f'{SEED_PREFIX}diego'))
    lead_ids = _make_leads(session, property_id, 1)
    print(f'  [3] No team:        {property_id} ({len(lead_ids)} leads)')
    return lead_ids


# ── Clear / Main ─────────────────────────────────────────────────────────────

def clear_seeded_data(session):
    """Remove every seeded row."""
    like = f'{SEED_PREFIX}%'
    deleted_logs = session.query(LeadAssignmentLog).filter(
        LeadAssignmentLog.lead_id.like(like)).delete(synchronize_session=False)
    session.query(LeadEvent).filter(LeadEvent.lead_id.like(like)).delete(synchronize_session=False)
    deleted_leads = session.query(Lead).filter(Lead.id.like(like)).delete(synchronize_session=False)
    session.query(Property).filter(Property.id.like(like)).delete(synchronize_session=False)
    session.query(ScoreHistory).filter(ScoreHistory.realtor_id.like(like)).delete(synchronize_session=False)
    session.query(RealtorScore).filter(RealtorScore.realtor_id.like(like)).delete(synchronize_session=False)
    session.query(TeamMember).filter(TeamMember.team_id.like(like)).delete(synchronize_session=False)
    session.query(Team).filter(Team.id.like(like)).delete(synchronize_session=False)
    deleted_realtors = session.query(Realtor).filter(Realtor.id.like(like)).delete(synchronize_session=False)
    session.commit()

    print(f'Cleared {deleted_leads} leads, {deleted_logs} assignment logs, {deleted_realtors} realtors.')


def main():
    parser = argparse.ArgumentParser(description='Seed demo data for lead distribution')
    parser.add_argument('--clear', action='store_true', help='Clear seeded data before (or instead of) seeding')
    parser.add_argument('--clear-only', action='store_true', help='Only clear, do not re-seed')
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        # Ensure tables exist (for SQLite local dev)
        Base.metadata.create_all(engine)

        session = get_session()
        try:
            if args.clear or args.clear_only:
                clear_seeded_data(session)
                if args.clear_only:
                    return

            print('Seeding demo data...')
            lead_ids = seed_ranked_team(session)
            lead_ids += seed_exhausted_team(session)
            lead_ids += seed_teamless_property(session)
            session.commit()

        except Exception as e:
            session.rollback()
            print(f'Error: {e}')
            raise
        finally:
            session.close()

        for lead_id in lead_ids:
            service.on_lead_created(lead_id)
        print(f'\nDone! Registered {len(lead_ids)} leads. Run `rq worker lead-distribution` to distribute them.')


if __name__ == '__main__':
    main()
