#!/usr/bin/env python
"""Operational entry points for the chat notification engine.

Usage:
    python backend/scripts/notify.py check             # connect and resolve the configured channels
    python backend/scripts/notify.py test              # post a card for a synthetic order
    python backend/scripts/notify.py lifecycle-test    # walk a synthetic order pending -> delivered
    python backend/scripts/notify.py reconcile 42      # force-refresh (or recreate) order 42's message
    python backend/scripts/notify.py reconcile 42 --no-force
    python backend/scripts/notify.py sweep             # one reconciliation pass over active orders
    python backend/scripts/notify.py token alice --role Staff   # mint a bearer token for staff tooling

Settings come from the environment / .env (NOTIFY_BOT_TOKEN, NOTIFY_*_CHANNEL_ID, ...).
The engine runs inline on this process; no background thread is started.
"""
from __future__ import annotations
import os, sys, argparse, json

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from fulfillment import create_app, get_notifications  # type: ignore
from fulfillment.constants.permissions import ROLE_PRESETS, expand_role  # type: ignore
from flask_jwt_extended import create_access_token


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def cmd_check(service, args) -> int:
    report = service.run(service.check())
    _print(report)
    if not report['configured']:
        print(f"[WARN] notifications inactive, missing: {', '.join(report['missing'])}")
        return 1
    if not report['ready']:
        print('[ERROR] messaging channel did not become ready')
        return 1
    unresolved = [cid for cid, ok in report['channels'].items() if not ok]
    if unresolved:
        print(f"[ERROR] channel(s) not found: {', '.join(unresolved)}")
        return 1
    print('[OK] notifications ready')
    return 0


def cmd_test(service, args) -> int:
    result = service.run(service.send_test())
    _print(result)
    return 0 if result['sent'] else 1


def cmd_lifecycle(service, args) -> int:
    result = service.run(service.lifecycle_test(actor=args.actor))
    for step in result['steps']:
        flag = 'OK' if step['ok'] else 'FAIL'
        print(f"[{flag}] {step['action']:<8} -> {step['status']}")
    return 0 if result['ok'] else 1


def cmd_reconcile(service, args) -> int:
    result = service.run(service.reconcile(args.order_id, force=args.force))
    if result is None:
        print(f"[ERROR] order {args.order_id} not found")
        return 1
    print(f"order {args.order_id}: {result.value}")
    return 0 if result.value not in ('failed', 'deferred') else 1


def cmd_sweep(service, args) -> int:
    report = service.run(service.sweep())
    _print(report.to_dict())
    return 0 if not report.failed and not report.aborted else 1


def cmd_token(service, args) -> int:
    perms = expand_role(args.role)
    if not perms:
        print(f"[ERROR] unknown role {args.role}, expected one of {', '.join(ROLE_PRESETS)}")
        return 1
    print(create_access_token(identity=args.identity, additional_claims={'perms': perms}))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Chat notification operations')
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('check', help='connect and verify the configured channels').set_defaults(func=cmd_check)
    sub.add_parser('test', help='send a synthetic order card').set_defaults(func=cmd_test)
    lc = sub.add_parser('lifecycle-test', help='replay a full lifecycle on a synthetic order')
    lc.add_argument('--actor', default='Test')
    lc.set_defaults(func=cmd_lifecycle)
    rc = sub.add_parser('reconcile', help='force reconcile one order')
    rc.add_argument('order_id', type=int)
    rc.add_argument('--no-force', dest='force', action='store_false')
    rc.set_defaults(func=cmd_reconcile)
    sub.add_parser('sweep', help='run one reconciliation sweep').set_defaults(func=cmd_sweep)
    tk = sub.add_parser('token', help='mint a bearer token carrying a role preset')
    tk.add_argument('identity')
    tk.add_argument('--role', default='Staff')
    tk.set_defaults(func=cmd_token)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    app = create_app({'NOTIFY_BACKGROUND': False, 'NOTIFY_AUTOSTART': False})
    with app.app_context():
        service = get_notifications()
        try:
            return args.func(service, args)
        finally:
            service.shutdown()


if __name__ == '__main__':
    sys.exit(main())
