"""Code a free-text query against the CCI or ICD-10-CA catalog and print the results."""

import logging
import sys
from argparse import ArgumentParser
from pathlib import Path

from rich.console import Console
from rich.table import Table

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_ROOT = PROJECT_ROOT / "src"
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(SRC_ROOT))

from agents.pipeline import (
    CodingPipeline,
    DiagnosisResponse,
    EnhancementResponse,
    LookupResponse,
    ReconciliationResponse,
    SearchResponse,
)
from core.errors import CodingEngineError
from core.settings import get_settings


def _results_table(response: EnhancementResponse) -> Table:
    table = Table(title=f"{response.backend}: {response.query}", show_header=True, header_style="bold blue")
    table.add_column("Code", style="bold")
    table.add_column("Description")
    table.add_column("Chosen")
    table.add_column("Qualifier")
    table.add_column("Attributes")
    table.add_column("Score", justify="right")
    for item in response.results:
        attributes = ", ".join(
            f"{domain}={attribute.code}"
            for domain, attribute in (item.applied_attributes or {}).items()
            if attribute is not None
        )
        table.add_row(
            item.code,
            item.description,
            "yes" if item.is_chosen else "",
            item.applied_qualifier.code if item.applied_qualifier else "",
            attributes,
            f"{item.similarity_score:.3f}" if item.similarity_score is not None else "",
            style="green" if item.is_chosen else None,
        )
    return table


def _comparison_table(response: ReconciliationResponse) -> Table:
    result = response.reconciliation
    table = Table(title=f"{result.backend_a} vs {result.backend_b}", show_header=True, header_style="bold blue")
    table.add_column("Code", style="bold")
    table.add_column("A")
    table.add_column("B")
    table.add_column("Qualifier")
    table.add_column("Attributes")
    table.add_column("Full match")
    for detail in result.details:
        table.add_row(
            detail.code,
            "yes" if detail.chosen_by_a else "",
            "yes" if detail.chosen_by_b else "",
            "match" if detail.qualifier_match else "differs",
            ", ".join(f"{domain}:{'ok' if ok else 'x'}" for domain, ok in detail.attribute_match.items()),
            "yes" if detail.full_match else "",
            style="green" if detail.full_match else None,
        )
    return table


def _diagnosis_table(response: DiagnosisResponse) -> Table:
    table = Table(title=response.query, show_header=True, header_style="bold blue")
    table.add_column("Code", style="bold")
    table.add_column("Description")
    table.add_column("Type")
    table.add_column("Rationale")
    for result in response.package.results:
        table.add_row(result.code, result.description, result.diagnosis_type, result.rationale)
    return table


def _search_table(response: SearchResponse) -> Table:
    table = Table(title=response.query, show_header=True, header_style="bold blue")
    table.add_column("Code", style="bold")
    table.add_column("Description")
    table.add_column("Score", justify="right")
    for item in response.results:
        score = f"{item.similarity_score:.3f}" if item.similarity_score is not None else ""
        style = "green" if item.code == response.query.strip().upper() else None
        table.add_row(item.code, item.description, score, style=style)
    return table


def _print(console: Console, response) -> None:
    if response.status == "not_found":
        console.print(f"[bold yellow]No codes found for `{response.query}`.[/bold yellow]")
        return

    if isinstance(response, LookupResponse):
        console.print_json(response.item.model_dump_json(by_alias=True))
    elif isinstance(response, SearchResponse):
        console.print(_search_table(response))
    elif isinstance(response, EnhancementResponse):
        console.print(_results_table(response))
    elif isinstance(response, ReconciliationResponse):
        console.print(_comparison_table(response))
        console.print_json(response.reconciliation.summary.model_dump_json(by_alias=True))
    else:
        console.print(_diagnosis_table(response))
        console.print(response.package.summary)
        if response.package.discarded_codes:
            console.print(f"[bold yellow]Discarded: {response.package.discarded_codes}[/bold yellow]")
    console.print(f"[dim]{response.elapsed_ms:.0f} ms[/dim]")


def main() -> None:
    parser = ArgumentParser(description="Resolve clinical text to CCI interventions or ICD-10-CA diagnoses")
    parser.add_argument("query", help="Free-text intervention/diagnosis, or a code in lookup mode")
    parser.add_argument(
        "--mode",
        choices=["cci", "dual", "icd", "lookup", "icd-search", "icd-lookup", "icd-context"],
        default="cci",
    )
    parser.add_argument("--backend", choices=["a", "b"], default="a", help="Backend used in cci mode")
    parser.add_argument("--catalog", type=Path, help="Catalog file overriding the configured one")
    parser.add_argument("--attributes", type=Path, help="Attribute definitions file")
    parser.add_argument("--limit", type=int, help="Number of candidates to retrieve")
    args = parser.parse_args()

    settings = get_settings()
    overrides = {}
    if args.catalog is not None:
        key = "icd_catalog_path" if args.mode.startswith("icd") else "cci_catalog_path"
        overrides[key] = args.catalog.resolve()
    if args.attributes is not None:
        overrides["attributes_path"] = args.attributes.resolve()
    if overrides:
        settings = settings.model_copy(update=overrides)

    log_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(level=settings.log_level, format=log_fmt)

    console = Console()
    try:
        pipeline = CodingPipeline.from_settings(settings)
        if args.mode == "lookup":
            response = pipeline.lookup_code(args.query)
        elif args.mode == "cci":
            response = pipeline.enhance(args.query, backend=args.backend, limit=args.limit)
        elif args.mode == "dual":
            response = pipeline.reconcile(args.query, limit=args.limit)
        elif args.mode == "icd-search":
            response = pipeline.icd_search(args.query, limit=args.limit)
        elif args.mode == "icd-lookup":
            response = pipeline.icd_lookup(args.query)
        elif args.mode == "icd-context":
            response = pipeline.icd_neighbours(args.query)
        else:
            response = pipeline.code_diagnosis(args.query)
    except (CodingEngineError, OSError, ValueError) as e:
        console.print(f"[bold red]{type(e).__name__}: {e}[/bold red]")
        sys.exit(1)

    _print(console, response)


if __name__ == "__main__":
    main()
