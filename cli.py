#!/usr/bin/env python
"""
Command-line interface for the dynamic allocation engine.

Usage:
    python cli.py allocate --inputs inputs.json --config settings.yaml --csv results.csv
    python cli.py validate --config settings.yaml --inputs inputs.json
    python cli.py template --output settings.yaml
    python cli.py serve --config settings.yaml --campaigns campaigns.json
    python cli.py reallocate --campaign campaign-1 --url http://localhost:8000
"""

import argparse
import json
import sys
import logging
from pathlib import Path

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Dynamic Allocation - advertising budget allocation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Allocate command
    allocate_parser = subparsers.add_parser("allocate", help="Run one allocation pass on an inputs file")
    allocate_parser.add_argument(
        "--inputs", "-i",
        type=str,
        required=True,
        help="Path to BudgetAllocationInputs JSON file"
    )
    allocate_parser.add_argument(
        "--config", "-c",
        type=str,
        help="Optional: Path to YAML configuration file"
    )
    allocate_parser.add_argument(
        "--campaign",
        type=str,
        help="Campaign id whose parameter overrides apply"
    )
    allocate_parser.add_argument(
        "--initial",
        action="store_true",
        help="Use the initial allocation node cap"
    )
    allocate_parser.add_argument(
        "--output", "-o",
        type=str,
        help="Write the output JSON here instead of stdout"
    )
    allocate_parser.add_argument(
        "--csv",
        type=str,
        help="Also write per-node results as CSV"
    )

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate configuration and inputs")
    validate_parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to YAML configuration file"
    )
    validate_parser.add_argument(
        "--inputs", "-i",
        type=str,
        help="Path to BudgetAllocationInputs JSON file"
    )

    # Template command
    template_parser = subparsers.add_parser("template", help="Write a configuration template")
    template_parser.add_argument(
        "--output", "-o",
        type=str,
        default="settings.yaml",
        help="Where to write the template"
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the allocation API")
    serve_parser.add_argument(
        "--config", "-c",
        type=str,
        help="Optional: Path to YAML configuration file"
    )
    serve_parser.add_argument(
        "--campaigns",
        type=str,
        required=True,
        help="Path to campaigns JSON file ({\"campaigns\": [...]})"
    )
    serve_parser.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Port")

    # Reallocate command
    reallocate_parser = subparsers.add_parser("reallocate", help="Trigger a pass on a running API")
    reallocate_parser.add_argument(
        "--campaign",
        type=str,
        required=True,
        help="Campaign id"
    )
    reallocate_parser.add_argument(
        "--url",
        type=str,
        help="API URL (defaults to ALLOCATION_API_URL)"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Route to command handlers
    if args.command == "allocate":
        cmd_allocate(args)
    elif args.command == "validate":
        cmd_validate(args)
    elif args.command == "template":
        cmd_template(args)
    elif args.command == "serve":
        cmd_serve(args)
    elif args.command == "reallocate":
        cmd_reallocate(args)


def _load_settings(path):
    from dynamic_allocation.config.loader import ConfigLoader
    from dynamic_allocation.config.schema import EngineSettings

    if path:
        logger.info(f"Loading configuration from: {path}")
        return ConfigLoader.from_yaml(path)
    logger.info("No config provided - using default parameters")
    return EngineSettings()


def cmd_allocate(args):
    """Run one pass over an inputs file."""
    from dynamic_allocation.allocation import LineageIndex, distribute, rank, select_experiments, spendable_budget
    from dynamic_allocation.allocation.serialization import dumps, inputs_from_wire, output_to_wire
    from dynamic_allocation.core.errors import AllocationError

    try:
        settings = _load_settings(args.config)
        params = settings.parameters_for(args.campaign) if args.campaign else settings.parameters

        logger.info(f"Loading inputs from: {args.inputs}")
        inputs = inputs_from_wire(Path(args.inputs).read_text(encoding="utf-8"))
        inputs.validate()

        ranking = rank(inputs.per_node_inputs, params, params.node_cap_for(args.initial))
        experiments = select_experiments(
            ranking.dropped, params, spendable_budget(inputs, params), inputs.volumes()
        )
        output = distribute(
            ranking, inputs, params, experiments, lineage=LineageIndex(inputs.per_node_inputs)
        )
    except AllocationError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(
        f"Funded {len(output.per_node_results)} of {len(inputs.per_node_inputs)} node(s), "
        f"media {output.total_media_budget}, anticipated spend {output.anticipated_spend_for_day}"
    )

    text = dumps(output_to_wire(output))
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info(f"Output saved to: {args.output}")
    else:
        print(text)

    if args.csv:
        output.to_dataframe().to_csv(args.csv, index=False)
        logger.info(f"Per-node results saved to: {args.csv}")


def cmd_validate(args):
    """Validate configuration and, optionally, an inputs file."""
    from dynamic_allocation.allocation.serialization import inputs_from_wire
    from dynamic_allocation.core.errors import InvalidParameters
    from dynamic_allocation.core.validation import InputValidator

    logger.info("=" * 60)
    logger.info("Dynamic Allocation - Validation")
    logger.info("=" * 60)

    try:
        settings = _load_settings(args.config)
    except InvalidParameters as e:
        print("\nConfiguration FAILED")
        for error in e.errors:
            print(f"    - {error}")
        sys.exit(1)

    print(f"\nConfiguration '{settings.name}' PASSED")
    print(f"  Campaign overrides: {len(settings.campaign_overrides)}")
    print(f"  Measure sources: {len(settings.measure_sources)}")

    if not args.inputs:
        return

    try:
        inputs = inputs_from_wire(Path(args.inputs).read_text(encoding="utf-8"))
    except InvalidParameters as e:
        print("\nInputs FAILED to parse")
        for error in e.errors:
            print(f"    - {error}")
        sys.exit(1)

    result = InputValidator().validate_all(inputs)
    print("\n" + str(result))
    print(f"  Nodes: {len(inputs.per_node_inputs)}")
    print(f"  Remaining budget: {inputs.remaining_budget} of {inputs.total_budget}")

    if not result.valid:
        sys.exit(1)


def cmd_template(args):
    """Write the configuration template."""
    import yaml
    from dynamic_allocation.config.loader import ConfigLoader

    path = Path(args.output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(ConfigLoader.get_template(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Template saved to: {path}")


def cmd_serve(args):
    """Run the API over a campaigns file and the configured database."""
    import uvicorn
    from dynamic_allocation.allocation import AllocationLifecycleController, InMemoryCampaignSource
    from dynamic_allocation.allocation.serialization import campaigns_from_wire
    from dynamic_allocation.api.server import create_app
    from dynamic_allocation.database import SqlAllocationStore, init_db
    from dynamic_allocation.measures import MeasureCatalog, build_measure_source

    settings = _load_settings(args.config)

    campaigns = InMemoryCampaignSource()
    for snapshot in campaigns_from_wire(Path(args.campaigns).read_text(encoding="utf-8")):
        campaigns.add(snapshot)

    catalog = None
    if settings.measure_sources:
        catalog = MeasureCatalog([build_measure_source(c) for c in settings.measure_sources])

    controller = AllocationLifecycleController(
        store=SqlAllocationStore(init_db(settings)),
        campaigns=campaigns,
        settings=settings,
        catalog=catalog,
    )

    logger.info(f"Serving allocation API at http://{args.host}:{args.port}")
    uvicorn.run(create_app(controller), host=args.host, port=args.port)


def cmd_reallocate(args):
    """Trigger a pass through the API."""
    from dynamic_allocation.api.client import AllocationServiceClient
    from dynamic_allocation.core.errors import AllocationError

    with AllocationServiceClient(args.url) as client:
        try:
            response = client.reallocate(args.campaign)
        except AllocationError as e:
            logger.error(str(e))
            sys.exit(1)

    print(json.dumps(response.to_wire(), indent=2))


if __name__ == "__main__":
    main()
