from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from keymarket import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Resolve payouts stuck in processing against the gateway and report.")
    parser.add_argument("--min-age-seconds", type=int, default=60, help="Only check payouts processing for at least this long.")
    parser.add_argument("--sweep", action="store_true", help="Run a payout sweep after reconciling.")
    args = parser.parse_args()

    app = _bootstrap_app()
    engine = app.extensions["keymarket"]

    summary = {"reconcile": engine.reconcile_payouts(min_age_seconds=max(0, int(args.min_age_seconds)))}
    if args.sweep:
        summary["sweep"] = engine.run_payout_sweep()

    print(json.dumps(summary, indent=2, default=str))
    unresolved = int(summary["reconcile"].get("unresolved") or 0)
    return 0 if unresolved == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
