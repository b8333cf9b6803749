import json

from django.core.management.base import BaseCommand
from django.utils import timezone

from automations.processor import run_sweeps


class Command(BaseCommand):
    help = "Run the automation reconciliation sweeps (pending events, pending runs, due delayed runs, stale running runs)."

    def add_arguments(self, parser):
        parser.add_argument("--events", action="store_true", help="Dispatch unprocessed events")
        parser.add_argument("--runs", action="store_true", help="Start pending runs past the debounce window")
        parser.add_argument("--delayed", action="store_true", help="Resume waiting runs whose delay elapsed")
        parser.add_argument("--stale", action="store_true", help="Reclaim running runs whose worker stopped checkpointing")
        parser.add_argument("--json", action="store_true", help="Output as JSON (default is pretty text)")

    def handle(self, *args, **opts):
        selected = {k: bool(opts.get(k)) for k in ("events", "runs", "delayed", "stale")}
        # no flag means every sweep
        if not any(selected.values()):
            selected = {k: True for k in selected}

        results = {"time": timezone.now().isoformat(), **run_sweeps(**selected)}

        if opts.get("json"):
            self.stdout.write(json.dumps(results, indent=2))
            return

        self.stdout.write(self.style.MIGRATE_HEADING(f"Automation sweeps @ {results['time']}"))
        for name in ("events", "runs", "delayed", "stale"):
            if name not in results:
                continue
            summary = ", ".join(f"{k}={v}" for k, v in results[name].items())
            self.stdout.write(f"  {name:8s} {summary}")
