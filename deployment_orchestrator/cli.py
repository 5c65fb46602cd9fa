import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from .audit import AuditTrail, JsonLinesSink, LoggingSink
from .config import ControllerConfig, ProbeConfig
from .controller import DeploymentController, default_strategies
from .failure import FailureInjector
from .health import HealthAggregator, HealthProbe, SimulatedHealthChecker
from .logger import LEVELS, setup_logging, get_logger
from .models import DeploymentRequest, EnvironmentTag, Health, ServiceInstance
from .provisioner import InMemoryProvisioner
from .registry import InstanceRegistry
from .traffic import TrafficPolicyStore


def load_fleet(path):
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        instances = []
        for i in data:
            instance = ServiceInstance(
                instance_id=i["instance_id"],
                service_name=i["service_name"],
                version=i["version"],
                metadata={"address": i["address"]} if i.get("address") else {}
            )
            instances.append(instance)
        return instances
    except Exception as e:
        logger.error(f"Error loading fleet: {e}")
        raise


def save_fleet(path, instances):
    data = []
    for instance in instances:
        record = asdict(instance)
        if instance.metadata.get("address"):
            record["address"] = instance.metadata["address"]
        data.append(record)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def load_request(path):
    with open(path) as f:
        return DeploymentRequest(**json.load(f))


def parse_error_rate(value):
    """VERSION=RATE, e.g. v2=0.3"""
    version, sep, rate = value.partition("=")
    try:
        rate = float(rate)
    except ValueError:
        rate = -1.0
    if not sep or not version or not 0 <= rate <= 1:
        raise argparse.ArgumentTypeError(f"expected VERSION=RATE with RATE in 0..1, got {value!r}")
    return version, rate


def scale_params(params, speed):
    """Shrink every duration (keys ending in _s) for a faster simulation"""
    return {k: v * speed if k.endswith("_s") and isinstance(v, (int, float)) else v
            for k, v in params.items()}


async def simulate(fleet, request, injector, speed=1.0, audit_path=None):
    """Run one request against an in-memory fleet and return (deployment, registry)"""
    logger = get_logger("cli")
    probe_config = ProbeConfig(interval_s=5.0 * speed, timeout_s=2.0 * speed)
    registry = InstanceRegistry(HealthAggregator.from_config(probe_config))
    provisioner = InMemoryProvisioner(injector)
    for instance in fleet:
        provisioner.adopt(instance.instance_id, instance.service_name, instance.version)
        instance.environment_tag = EnvironmentTag.STABLE
        registry.register(instance)

    sinks = [LoggingSink()]
    if audit_path:
        sinks.append(JsonLinesSink(audit_path))
    probe = HealthProbe(registry, SimulatedHealthChecker(injector), probe_config)
    controller = DeploymentController(
        registry, TrafficPolicyStore(registry), provisioner, probe=probe,
        config=ControllerConfig(tick_interval_s=5.0 * speed, propagation_latency_s=5.0 * speed,
                                provision_retry_base_delay_s=0.5 * speed),
        audit=AuditTrail(sinks),
    )
    # Defaults are spelled out so they get scaled too
    params_class = default_strategies()[request.strategy_kind].params_class
    full_params = asdict(params_class.from_dict(request.strategy_params))
    request.strategy_params = scale_params(full_params, speed)

    await controller.start()
    try:
        # Let the existing fleet earn a verdict before traffic moves
        for _ in range(probe_config.window_size * 4):
            if all(i.health != Health.UNKNOWN for i in registry.all()):
                break
            await asyncio.sleep(probe_config.interval_s)
        logger.info(f"Fleet ready: {sum(1 for i in registry.all() if i.health == Health.HEALTHY)} healthy")
        deployment_id = controller.submit(request)
        deployment = await controller.wait(deployment_id)
    finally:
        await controller.shutdown()
    return deployment, registry


def main():
    parser = argparse.ArgumentParser(description="Deployment orchestrator")
    parser.add_argument("--log-level", default="INFO", choices=LEVELS)
    sub = parser.add_subparsers(dest="cmd", required=True)

    sim = sub.add_parser("simulate", help="run a rollout against a simulated fleet")
    sim.add_argument("--fleet", required=True)
    sim.add_argument("--request", required=True)
    sim.add_argument("--unhealthy-version", action="append", default=[])
    sim.add_argument("--error-rate", action="append", default=[], type=parse_error_rate)
    sim.add_argument("--audit")
    sim.add_argument("--output")
    sim.add_argument("--speed", type=float, default=0.01)
    sim.add_argument("--seed", type=int)

    audit = sub.add_parser("audit", help="print exported audit events")
    audit.add_argument("--file", required=True)
    audit.add_argument("--deployment")

    args = parser.parse_args()
    setup_logging(args.log_level)

    if args.cmd == "simulate":
        try:
            fleet = load_fleet(args.fleet)
            request = load_request(args.request)
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        if args.speed <= 0:
            print("Error: --speed must be > 0")
            sys.exit(1)

        injector = FailureInjector(unhealthy_versions=args.unhealthy_version,
                                   error_rates=dict(args.error_rate), seed=args.seed)
        deployment, registry = asyncio.run(simulate(fleet, request, injector, args.speed, args.audit))
        print(json.dumps(deployment.to_dict(), indent=2))
        if args.output:
            save_fleet(args.output, registry.all())

    if args.cmd == "audit":
        try:
            for event in JsonLinesSink.read(args.file, args.deployment):
                print(json.dumps(event, sort_keys=True))
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)

if __name__ == "__main__":
    main()
