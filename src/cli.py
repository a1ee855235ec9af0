#!/usr/bin/env python3
"""
RewardGuard Command Line Interface.

Provides commands for running and managing RewardGuard:
    - serve: Start the API server
    - check: Verify installation and configuration
    - info: Display system information
    - analyze: Score a recorded list of view events

Usage:
    rewardguard serve [--host HOST] [--port PORT] [--debug]
    rewardguard check
    rewardguard info
    rewardguard analyze events.json
    rewardguard --version
"""

import argparse
import json
import os
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "integrity_engine.py")):
    sys.path.insert(0, os.path.dirname(__file__))

__version__ = "0.1.0"


def cmd_serve(args):
    """Start the RewardGuard API server."""
    from dotenv import load_dotenv

    from monitoring import configure_logging

    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"Starting RewardGuard API server on {host}:{port}")

    if args.production:
        try:
            import gunicorn.app.base
        except ImportError:
            print("Error: gunicorn not installed. Install with: pip install rewardguard[production]")
            sys.exit(1)

        class StandaloneApplication(gunicorn.app.base.BaseApplication):
            """Gunicorn WSGI application wrapper for production deployment."""

            def __init__(self, app, options=None):
                self.options = options or {}
                self.application = app
                super().__init__()

            def load_config(self):
                for key, value in self.options.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

            def load(self):
                return self.application

        # Each worker keeps its own memory store; use STATE_BACKEND=redis with >1 worker
        workers = args.workers or int(os.getenv("WORKERS", 4))
        if workers > 1 and os.getenv("STATE_BACKEND", "memory").lower() == "memory":
            print("Warning: in-memory state is per worker; set STATE_BACKEND=redis")

        options = {
            "bind": f"{host}:{port}",
            "workers": workers,
            "worker_class": "sync",
            "timeout": 120,
            "accesslog": "-",
            "errorlog": "-",
        }
        StandaloneApplication(_get_flask_app(), options).run()
    else:
        _get_flask_app().run(host=host, port=port, debug=debug)


def _get_flask_app():
    """Get the Flask application instance."""
    from api import create_app

    return create_app()


def cmd_check(args):
    """Check installation and configuration."""
    from dotenv import load_dotenv

    load_dotenv()
    print("RewardGuard Installation Check")
    print("=" * 40)

    checks = []

    try:
        from integrity_engine import EngineConfig

        EngineConfig.from_env()
        checks.append(("Engine configuration", "OK"))
    except Exception as e:
        checks.append(("Engine configuration", f"FAIL: {e}"))

    try:
        import flask  # noqa: F401

        checks.append(("Flask API", "OK"))
    except ImportError as e:
        checks.append(("Flask API", f"FAIL: {e}"))

    try:
        from storage import get_state_store

        store = get_state_store()
        status = "OK" if store.is_available() else "WARN (not available)"
        checks.append((f"State store ({store.__class__.__name__})", status))
    except Exception as e:
        checks.append(("State store", f"FAIL: {e}"))

    try:
        from scaling import get_lock_manager

        checks.append((f"Locks ({get_lock_manager().__class__.__name__})", "OK"))
    except Exception as e:
        checks.append(("Locks", f"FAIL: {e}"))

    try:
        from external_services import get_identity_oracle, get_ledger_service

        checks.append((f"Identity oracle ({get_identity_oracle().__class__.__name__})", "OK"))
        checks.append((f"Ledger ({get_ledger_service().__class__.__name__})", "OK"))
    except Exception as e:
        checks.append(("External services", f"FAIL: {e}"))

    try:
        import redis  # noqa: F401

        checks.append(("Redis support", "OK"))
    except ImportError:
        checks.append(("Redis support", "SKIP (redis not installed)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "SKIP" in status or "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display system information."""
    import platform

    from dotenv import load_dotenv

    load_dotenv()
    print("RewardGuard System Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    print()
    print("Configuration:")
    print(f"  STATE_BACKEND: {os.getenv('STATE_BACKEND', 'memory (default)')}")
    print(f"  REDIS_URL: {'configured' if os.getenv('REDIS_URL') else 'not set'}")
    print(f"  IDENTITY_ORACLE_URL: {'configured' if os.getenv('IDENTITY_ORACLE_URL') else 'not set'}")
    print(f"  LEDGER_URL: {'configured' if os.getenv('LEDGER_URL') else 'not set'}")
    print(f"  REWARDGUARD_DEV_MODE: {os.getenv('REWARDGUARD_DEV_MODE', 'false (default)')}")
    print(f"  LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")

    print()
    print("Limits:")
    try:
        from integrity_engine import EngineConfig

        config = EngineConfig.from_env()
        print(f"  Daily: {config.daily.max_xp_per_day} XP, {config.daily.max_ad_views_per_day} ads, "
              f"{config.daily.max_quiz_answers_per_day} quizzes ({config.daily.timezone})")
        print(f"  Suspicion bands: challenge {config.behavior.challenge_score}, "
              f"reverify {config.behavior.reverify_score}, block {config.behavior.block_score}")
        print(f"  Challenge every {config.challenges.views_before_challenge} views, "
              f"lock {config.challenges.lock_duration_ms} ms after "
              f"{config.challenges.max_failed_attempts} failures")
        for lc in config.rate_limits.limit_classes.values():
            print(f"  Rate limit {lc.name}: {lc.max_requests}/{lc.window_seconds}s "
                  f"(IP {lc.ip_limit})")
    except Exception as e:
        print(f"  Error: {e}")

    return 0


def cmd_analyze(args):
    """Print the behavior analysis of a recorded event list."""
    from behavior_analyzer import BehaviorThresholds, ViewEvent, analyze_view_behavior

    try:
        with open(args.events) as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: could not read {args.events}: {e}", file=sys.stderr)
        return 1

    if isinstance(raw, dict):
        raw = raw.get("events", [])
    try:
        events = [ViewEvent.from_dict(e) for e in raw]
    except TypeError as e:
        print(f"Error: invalid event record: {e}", file=sys.stderr)
        return 1

    analysis = analyze_view_behavior(events, BehaviorThresholds.from_env(), args.honeypots)
    print(json.dumps(analysis.to_dict(), indent=2))
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="rewardguard",
        description="RewardGuard - anti-bot integrity for reward-earning actions",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    analyze_parser = subparsers.add_parser("analyze", help="Score recorded view events")
    analyze_parser.add_argument("events", help="JSON file with a list of view events")
    analyze_parser.add_argument(
        "--honeypots", type=int, default=0, help="Honeypot triggers to include in the score"
    )

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "check":
        sys.exit(cmd_check(args))
    elif args.command == "info":
        sys.exit(cmd_info(args))
    elif args.command == "analyze":
        sys.exit(cmd_analyze(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
