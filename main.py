"""
CLI entry point for the AccessGate authorization engine.

Usage:
    python main.py init-db
    python main.py email-allowed alice@example.com
    python main.py config-get default_rate_limits
    python main.py config-set default_rate_limits '{"rate": 50, "per": 60}'
    python main.py expiring-grants [--days 7]
    python main.py revoke-grant GRANT_ID --by admin
"""

import argparse
import json
import logging
import sys

from accessgate.config import get_settings
from accessgate.db import (
    ConfigRepository,
    EmailPatternRepository,
    GrantRepository,
    get_engine,
    get_session_factory,
    init_db,
)
from accessgate.exceptions import AccessGateException


def _session_factory():
    db = get_settings().database
    return get_session_factory(get_engine(db.url, db.pool_size))


def cmd_init_db(args):
    """Create all tables."""
    db = get_settings().database
    init_db(get_engine(db.url, db.pool_size))
    print(f"Database initialised at {db.url}")


def cmd_email_allowed(args):
    """Check an email against the allowlist; exit 1 if not allowed."""
    allowed = EmailPatternRepository(_session_factory()).is_email_allowed(args.email)
    print("allowed" if allowed else "denied")
    if not allowed:
        sys.exit(1)


def cmd_config_get(args):
    value = ConfigRepository(_session_factory()).get_value(args.key)
    print(json.dumps(value, indent=2))


def cmd_config_set(args):
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError as e:
        print(f"Error: value is not valid JSON: {e}")
        sys.exit(2)
    entry = ConfigRepository(_session_factory()).set_value(
        args.key, value, updated_by=args.by, description=args.description
    )
    print(json.dumps(entry.model_dump(mode="json"), indent=2))


def cmd_expiring_grants(args):
    grants = GrantRepository(_session_factory()).expiring_grants(days=args.days)
    if not grants:
        print("No grants expiring in the window.")
        return
    for grant in grants:
        print(
            f"  {grant.grant_id}  user={grant.user_id}  api={grant.api_id}  "
            f"valid_until={grant.valid_until.isoformat()}"
        )


def cmd_revoke_grant(args):
    revoked = GrantRepository(_session_factory()).revoke(
        args.grant_id, revoked_by=args.by, reason=args.reason
    )
    if revoked:
        print(f"Grant {args.grant_id} revoked.")
    else:
        print(f"Grant {args.grant_id} was already revoked; first revocation kept.")


def main():
    parser = argparse.ArgumentParser(
        description="AccessGate - API access authorization engine"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create database tables")

    p_email = subparsers.add_parser("email-allowed", help="Check email allowlist")
    p_email.add_argument("email")

    p_get = subparsers.add_parser("config-get", help="Read a runtime config value")
    p_get.add_argument("key")

    p_set = subparsers.add_parser("config-set", help="Write a runtime config value")
    p_set.add_argument("key")
    p_set.add_argument("value", help="JSON-encoded value")
    p_set.add_argument("--by", default=None, help="User making the change")
    p_set.add_argument("--description", default=None)

    p_exp = subparsers.add_parser("expiring-grants", help="List grants about to expire")
    p_exp.add_argument("--days", type=int, default=None)

    p_rev = subparsers.add_parser("revoke-grant", help="Revoke an access grant")
    p_rev.add_argument("grant_id")
    p_rev.add_argument("--by", required=True, help="User performing the revocation")
    p_rev.add_argument("--reason", default=None)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    log_settings = get_settings().logging
    logging.basicConfig(level=log_settings.level, format=log_settings.format)

    commands = {
        "init-db": cmd_init_db,
        "email-allowed": cmd_email_allowed,
        "config-get": cmd_config_get,
        "config-set": cmd_config_set,
        "expiring-grants": cmd_expiring_grants,
        "revoke-grant": cmd_revoke_grant,
    }
    try:
        commands[args.command](args)
    except AccessGateException as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
