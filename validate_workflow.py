"""
Simple script to validate a workflow file.

Usage:
    python validate_workflow.py workflows/create_customer.yaml
    python validate_workflow.py main.yaml --library shared.yaml --workflow "Create customer"
"""

import argparse
import logging
import sys

import yaml

from workflow_errors import WorkflowValidationError
from workflow_expander import WorkflowExpander
from workflow_loader import load_workflows, validate_workflow
from workflow_models import StaticBinding
from workflow_params import extract_required_params_from_workflow

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Validate and expand workflow files")
    parser.add_argument("workflow_file", help="YAML or JSON file with one or more workflows")
    parser.add_argument("--library", action="append", default=[],
                        help="Extra file with workflows used as subworkflows (repeatable)")
    parser.add_argument("--workflow", help="Only check the workflow with this id or name")
    args = parser.parse_args(argv)

    try:
        logger.info(f"Loading workflows: {args.workflow_file}")
        workflows = load_workflows(args.workflow_file)
        library = list(workflows)
        for extra in args.library:
            library.extend(load_workflows(extra))

        if args.workflow:
            workflows = [w for w in workflows if args.workflow in (w.id, w.name)]
            if not workflows:
                logger.error(f"No workflow named {args.workflow!r} in {args.workflow_file}")
                return 1

        failed = 0
        for workflow in workflows:
            logger.info(f"✓ {workflow.label} ({workflow.id}): {len(workflow.steps)} steps, "
                        f"{len(workflow.unexpected_event_handlers)} interruption handlers")
            try:
                warnings = validate_workflow(workflow, library)
            except WorkflowValidationError as e:
                logger.error(f"  Invalid workflow: {e}")
                failed += 1
                continue

            params = extract_required_params_from_workflow(workflow)
            if params:
                logger.info(f"  Parameters: {', '.join(params)}")
            bindings = {name: StaticBinding(value=f"<{name}>") for name in params}
            flat = WorkflowExpander(library).expand(workflow, bindings).workflow
            logger.info(f"  Flattened steps: {len(flat.steps)}")

            if warnings:
                logger.warning("  Validation warnings:")
                for warning in warnings:
                    logger.warning(f"    - {warning}")
            else:
                logger.info("  ✓ No validation warnings")

        if failed:
            logger.error(f"{failed} of {len(workflows)} workflow(s) are invalid")
            return 1
        logger.info("")
        logger.info("All workflows are valid and ready to run!")
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Could not parse file: {e}")
        return 1
    except WorkflowValidationError as e:
        logger.error(f"Invalid workflow file: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
