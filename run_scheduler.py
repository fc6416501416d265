"""
Start the recurring job chains — run once per deploy, then exit.

Runs are executed (and their delays honoured) by RQ workers started with
the built-in scheduler enabled:
    rq worker --with-scheduler lead-distribution

Re-running this is harmless: chains that already have a pending run are
left alone.
"""
from leadengine.logging_config import configure_logging
from leadengine.distribution.scheduler import build_scheduler


if __name__ == '__main__':
    configure_logging()
    started = build_scheduler().ensure_scheduled()
    print(f"Started chains: {', '.join(started) or 'none (all running)'}")
