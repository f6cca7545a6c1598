"""
fsh-forge CLI

Command line tool for compiling authoring documents into StructureDefinitions
"""

import json
import sys
from pathlib import Path

import click

from . import __version__
from .config import (
    find_config_file,
    get_default_config,
    load_config_from_file,
    merge_configs,
    validate_config,
)
from .core.definitions import FHIRDefinitions, load_definitions_from_dir
from .core.diagnostics import DiagnosticCollector
from .engine.exporter import compile_project
from .engine.tank import FSHTank, load_document, load_documents
from .utils.logging import configure_logging, get_logger


@click.group()
@click.version_option(version=__version__)
def cli():
    """fsh-forge - compile FHIR profiles, extensions and logical models"""
    pass


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.option(
    "--definitions", "-d",
    type=click.Path(exists=True, file_okay=False),
    multiple=True,
    help="Base definitions directory (repeatable)",
)
@click.option("--log-level", default=None, help="Logging level")
@click.option("--diagnostics", type=click.Path(), help="Write diagnostics JSON to a file")
def build(project_dir, output, definitions, log_level, diagnostics):
    """Compile every artifact in a project directory"""
    config_path = find_config_file(project_dir)
    try:
        config = load_config_from_file(config_path) if config_path else get_default_config()
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    overrides = {}
    if output:
        overrides["output_dir"] = output
    if definitions:
        overrides["definitions"] = list(config.definitions) + list(definitions)
    if log_level:
        overrides["log_level"] = log_level
    config = merge_configs(config, overrides)
    if not config.input:
        config.input = [str(Path(project_dir) / "input")]

    issues = validate_config(config)
    if issues:
        click.echo("Invalid configuration:", err=True)
        for issue in issues:
            click.echo(f"  - {issue}", err=True)
        sys.exit(1)

    configure_logging(config.log_level, config.log_format)
    logger = get_logger(__name__)

    try:
        fhir = FHIRDefinitions(config.fhir_version)
        for directory in config.definitions:
            load_definitions_from_dir(directory, fhir)
        docs = load_documents([p for p in config.input if Path(p).exists()])
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Load error: {e}", err=True)
        sys.exit(1)

    logger.info("Loaded %d documents from %s", len(docs), ", ".join(config.input))
    tank = FSHTank(docs, config.canonical)
    collector = DiagnosticCollector()
    pkg = compile_project(config, tank, fhir, collector)
    written = pkg.write(config.output_dir)

    if diagnostics:
        with open(diagnostics, "w", encoding="utf-8") as f:
            json.dump(collector.to_dicts(), f, indent=2, ensure_ascii=False)

    for diagnostic in collector.diagnostics:
        click.echo(str(diagnostic), err=True)
    counts = collector.counts()
    click.echo(f"Exported {len(written)} StructureDefinitions to {config.output_dir}")
    click.echo(f"Errors: {counts['errors']}  Warnings: {counts['warnings']}")
    if collector.has_errors():
        sys.exit(1)


@cli.command()
@click.argument("document", type=click.Path(exists=True))
def validate(document):
    """Check that an authoring document parses"""
    try:
        doc = load_document(document)
    except Exception as e:
        click.echo(f"Validation error: {e}", err=True)
        sys.exit(1)

    tank = FSHTank([doc])
    missing = []
    for entity in tank.all_structures():
        for rule in entity.rules:
            if rule.kind == "obeys" and tank.fish(rule.invariant) is None:
                missing.append(f"{entity.name}: invariant {rule.invariant} is not defined")
            elif rule.kind == "insert" and tank.fish(rule.rule_set) is None:
                missing.append(f"{entity.name}: rule set {rule.rule_set} is not defined")
    if missing:
        click.echo("Warnings:", err=True)
        for message in missing:
            click.echo(f"  - {message}", err=True)

    click.echo(f"Document is valid: {document}")
    click.echo(f"Artifacts: {len(tank.all_structures())}")
    click.echo(f"Rules: {sum(len(e.rules) for e in tank.all_structures())}")


@cli.command()
@click.argument("document", type=click.Path(exists=True))
def show(document):
    """Show the artifacts and rules of an authoring document"""
    doc = load_document(document)
    tank = FSHTank([doc])

    click.echo(f"Document: {document}")
    click.echo()
    for entity in tank.all_structures():
        parent = f" : {entity.parent}" if entity.parent else ""
        click.echo(f"[{type(entity).__name__}] {entity.name}{parent}")
        for rule in entity.rules:
            click.echo(f"  - {rule.kind} {rule.path or '.'}")


def main():
    """CLI entry point"""
    cli()


if __name__ == "__main__":
    main()
