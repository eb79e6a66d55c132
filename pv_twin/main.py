"""
Command line entry point - PV Digital Twin Platform

    python -m pv_twin.main request.json            # one JSON request
    python -m pv_twin.main - < requests.json       # request(s) from stdin
    python -m pv_twin.main --demo                  # simulated plant, full pipeline

A request file may hold one request object or a list of them. Responses are
printed to stdout as JSON; logs go to stderr.
"""
import argparse
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone

from pv_twin.adapters.memory_store import InMemoryTwinStore
from pv_twin.adapters.plant_simulator import FaultKind, FaultSpec, PlantSimulator
from pv_twin.framework.settings import deep_merge, load_config, load_settings
from pv_twin.service import TwinService

DEMO_PLANT = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                          "config", "demo_plant.yaml")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="pv_twin", description="PV digital twin and anomaly engine")
    parser.add_argument("request", nargs="?", help="request JSON file, or - for stdin")
    parser.add_argument("--settings", help="YAML settings file (defaults to $PV_TWIN_SETTINGS)")
    parser.add_argument("--inputs", help="JSON fixture with configs, telemetry and weather")
    parser.add_argument("--snapshot", help="write all stored records to this JSON file on exit")
    parser.add_argument("--demo", action="store_true", help="run the simulated plant demo")
    parser.add_argument("--days", type=int, default=3, help="simulated days for --demo")
    return parser.parse_args(argv)


def read_requests(source: str):
    if source == "-":
        data = json.load(sys.stdin)
    else:
        with open(source, "r") as f:
            data = json.load(f)
    return data if isinstance(data, list) else [data]


def run_demo(settings, days: int):
    """Simulate a soiled plant with one outage and push it through every engine."""
    logger = logging.getLogger("Main")
    plant = load_config(DEMO_PLANT)
    start = datetime(2024, 6, 1, tzinfo=timezone.utc)
    end = start + timedelta(days=days)

    # hourly samples, so per-sample energy matches the hourly baseline
    settings = deep_merge(settings, {"detection": {"data_gap": {"expected_interval_minutes": 60}},
                                     "diagnosis": {"sample_interval_minutes": 60}})
    service = TwinService(settings, clock=lambda: end)
    service.start()
    stored = service.register_config(plant)

    simulator = PlantSimulator(stored, interval_minutes=60)
    simulator.inject_fault(FaultSpec(FaultKind.SOILING, start + timedelta(days=1), end, severity=0.25))
    simulator.inject_fault(FaultSpec(FaultKind.OFFLINE, end - timedelta(hours=14), end - timedelta(hours=11)))
    points = simulator.generate(start, end)
    service.store.add_telemetry(points)
    logger.info(f"Simulated {len(points)} telemetry rows for {stored.plant_id}")

    ts = start
    while ts < end:
        service.store.add_weather(stored.plant_id, ts, simulator.weather_at(ts))
        service.calculate_baseline(stored.plant_id, ts)
        service.calculate_performance_gap(stored.plant_id, ts)
        ts += timedelta(hours=1)

    responses = [service.handle({"operation": "detect_anomalies",
                                 "params": {"plant_id": stored.plant_id, "period_hours": days * 24}})]
    for anomaly in responses[0].get("anomalies", [])[:3]:
        responses.append(service.handle({"operation": "analyze_root_cause",
                                         "params": {"anomaly_id": anomaly["id"]}}))
    responses.append(service.handle({"operation": "run_audit",
                                     "params": {"plant_id": stored.plant_id, "period_days": days}}))
    return service, responses


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.settings)

    if args.demo:
        service, responses = run_demo(settings, args.days)
    else:
        if not args.request:
            print("error: a request file (or -) is required unless --demo is given", file=sys.stderr)
            return 2
        store = InMemoryTwinStore()
        if args.inputs:
            store.load_inputs(args.inputs)
        service = TwinService(settings, store=store)
        service.start()
        responses = [service.handle(request) for request in read_requests(args.request)]

    try:
        output = responses[0] if len(responses) == 1 else responses
        json.dump(output, sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")
        snapshot = args.snapshot or settings.get("store", {}).get("snapshot_path")
        if snapshot:
            service.store.export_snapshot(snapshot)
        logging.getLogger("Main").info("Run finished",
                                       extra={"props": {"metrics": service.observability.get_metrics()}})
    finally:
        service.stop()
    return 0 if all(r.get("success") for r in responses) else 1


if __name__ == "__main__":
    sys.exit(main())
