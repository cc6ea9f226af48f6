#!/usr/bin/env python3
"""Emit deterministic SQL that seeds a new approved admin account.

Roles are fixed at creation, so the script never touches an existing row:
when the email is already registered the insert is skipped and no event is
recorded.
"""

from __future__ import annotations

import argparse


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, email: str, username: str, actor: str) -> str:
    email_value = _quote_sql(email.strip().lower())
    username_value = _quote_sql(username.strip())
    actor_value = _quote_sql(actor)
    payload = f"jsonb_build_object('email', {email_value}, 'username', {username_value}, 'actor', {actor_value})"

    return f"""-- bluebox admin seed SQL
-- Run this in a privileged Postgres session against the application database.

with seeded as (
  insert into users (username, email, role, status)
  values ({username_value}, {email_value}, 'admin', 'approved')
  on conflict (email) do nothing
  returning id
)
insert into moderation_events (entity_type, entity_id, event_type, actor_type, payload)
select 'user', seeded.id, 'admin_seeded', 'system', {payload}
from seeded;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to seed a new admin account.")
    parser.add_argument("--email", required=True, help="Email the admin signs in with")
    parser.add_argument("--username", help="Username for the new account (defaults to the email local part)")
    parser.add_argument(
        "--actor",
        default="system",
        help="Actor label recorded in the moderation event payload",
    )
    args = parser.parse_args()

    username = args.username or args.email.strip().split("@", 1)[0]
    print(render_sql(email=args.email, username=username, actor=args.actor))


if __name__ == "__main__":
    main()
