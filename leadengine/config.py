"""
Centralized configuration — env vars and the enumerations shared across modules.

Product policy (TTL, ranking weights, job intervals) lives in
distribution/policy.py, loaded from YAML.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis / RQ ───────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
RQ_QUEUE_NAME = os.getenv('RQ_QUEUE_NAME', 'lead-distribution')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── Outbound consumers ───────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')
LEAD_EVENTS_WEBHOOK_URL = os.getenv('LEAD_EVENTS_WEBHOOK_URL')
# A corrupt lead is re-alerted at most this often while it stays corrupt
INVARIANT_ALERT_REPEAT_SECONDS = int(os.getenv('INVARIANT_ALERT_REPEAT_SECONDS', 86400))

# ── Policy file override ─────────────────────────────────────────────────────
DISTRIBUTION_CONFIG_PATH = os.getenv('DISTRIBUTION_CONFIG_PATH')

# ── Reservation states (Lead.status) ─────────────────────────────────────────
UNASSIGNED = 'UNASSIGNED'
RESERVED = 'RESERVED'
ACCEPTED = 'ACCEPTED'
EXHAUSTED = 'EXHAUSTED'

RESERVATION_STATES = [UNASSIGNED, RESERVED, ACCEPTED, EXHAUSTED]

# ── Sales pipeline stages (Lead.pipeline_stage) ──────────────────────────────
PIPELINE_STAGES = [
    'NEW',
    'CONTACT',
    'VISIT',
    'PROPOSAL',
    'DOCUMENTS',
    'WON',
    'LOST',
]
TERMINAL_PIPELINE_STAGES = {'WON', 'LOST'}

# ── Accounts and teams ───────────────────────────────────────────────────────
REALTOR_ACTIVE = 'ACTIVE'
REALTOR_STATUSES = [REALTOR_ACTIVE, 'SUSPENDED', 'DISABLED']

TEAM_ROLES = ['OWNER', 'MANAGER', 'REALTOR', 'ASSISTANT']
NON_ASSIGNABLE_TEAM_ROLES = {'ASSISTANT'}

# Roles allowed to force-assign any lead regardless of team ownership
MANAGEMENT_ROLES = {'ADMIN', 'AGENCY'}
TEAM_MANAGEMENT_ROLES = {'OWNER', 'MANAGER'}

# ── Recurring jobs ───────────────────────────────────────────────────────────
JOB_DISTRIBUTE = 'distribute'
JOB_EXPIRY_SWEEP = 'expiry_sweep'
JOB_RANKING_RECALCULATION = 'ranking_recalculation'
JOB_CLEANUP = 'cleanup'

RECURRING_JOBS = [
    JOB_DISTRIBUTE,
    JOB_EXPIRY_SWEEP,
    JOB_RANKING_RECALCULATION,
    JOB_CLEANUP,
]
