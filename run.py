# run.py
"""
Local rule simulator.

    python run.py --rules study_rules.yaml --participant p.json --event ev.json

Applies the rule set to the participant for one event and prints the new
participant state and the reports that would be created.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys

from studyrules import create_engine
from studyrules.core.config import Settings
from studyrules.engine.engine import ErrorPolicy
from studyrules.engine.loader import (
    dump_participant,
    dump_report,
    load_json_file,
    load_rules_from_yaml,
    parse_event,
    parse_participant,
)
from studyrules.engine.repositories import CapturingMessageSender, InMemoryStudyDB


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Apply study rules to a participant state")
    ap.add_argument("--rules", required=True, help="YAML/JSON rule file")
    ap.add_argument("--participant", required=True, help="participant state JSON")
    ap.add_argument("--event", required=True, help="study event JSON")
    ap.add_argument("--config", default=None, help="config.yaml (default: STUDY_ENGINE_CONFIG_FILE)")
    ap.add_argument("--abort-on-error", action="store_true", help="stop at the first failing rule")
    args = ap.parse_args(argv)

    settings = Settings(config_file=args.config) if args.config else Settings()
    settings.load_yaml_config()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    log = logging.getLogger("studyengine")

    rules = load_rules_from_yaml(args.rules)
    participant = parse_participant(load_json_file(args.participant))
    event = parse_event(load_json_file(args.event))

    sender = CapturingMessageSender()
    engine = create_engine(settings, InMemoryStudyDB(), sender)

    policy = ErrorPolicy.ABORT if args.abort_on_error else None
    result = engine.apply_rules(rules, participant, event, policy=policy)

    for err in result.errors:
        log.error("%s", err)
    for msg in sender.sent:
        log.info("message %s -> %s", msg.message_type, msg.confidential_pid)

    out = {
        "participant": dump_participant(result.participant),
        "reports": {k: dump_report(r) for k, r in result.data.reports_to_create.items()},
        "errors": [str(e) for e in result.errors],
    }
    json.dump(out, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
