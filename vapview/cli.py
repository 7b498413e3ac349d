import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from vapview.config import PolicyViewerConfig
from vapview.documents import DocumentStore
from vapview.exceptions import VapException
from vapview.gateway import EvaluatorGateway, render_verdict
from vapview.providers.engine import load_subprocess_engine
from vapview.services.policy_viewer import PolicyViewerServer, configure_logging

app = typer.Typer(no_args_is_help=True)


def serve(debug: bool = typer.Option(False, help="Enable debug logging")):
    config = PolicyViewerConfig(debug=True) if debug else PolicyViewerConfig()
    configure_logging(config.debug)
    PolicyViewerServer(config).run()


def evaluate(
    policy: Path = typer.Option(..., exists=True, dir_okay=False, help="ValidatingAdmissionPolicy YAML"),
    resource: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="Object to test; defaults to a sample Deployment"
    ),
    params: Optional[Path] = typer.Option(None, exists=True, dir_okay=False, help="Parameter object YAML"),
    engine: Optional[Path] = typer.Option(None, help="Evaluator binary"),
    debug: bool = typer.Option(False, help="Enable debug logging"),
):
    configure_logging(debug)
    config = PolicyViewerConfig()

    store = DocumentStore(policy.read_text(), resource.read_text() if resource else None)
    for document in (store.policy, store.resource):
        if not document.valid:
            logger.error(document.error)
            sys.exit(2)

    if store.param_kind is not None and params is None:
        logger.error(f"Policy declares paramKind {store.param_kind.kind}, pass it with --params")
        sys.exit(2)

    gateway = EvaluatorGateway(
        lambda: load_subprocess_engine(engine or config.engine_binary, config.engine_timeout)
    )

    async def _evaluate() -> str:
        await gateway.load()
        return await gateway.evaluate(
            store.policy.text,
            store.resource.text,
            params.read_text() if params else "",
        )

    try:
        verdict = asyncio.run(_evaluate())
    except VapException as e:
        logger.error(f"Evaluation failed: {e}")
        sys.exit(1)

    print(render_verdict(verdict))


app.command(name="serve", help="Run the policy viewer service.")(serve)
app.command(name="evaluate", help="Evaluate a policy against a resource once.")(evaluate)

if __name__ == "__main__":
    app()
