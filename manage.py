from certbatch.app import create_app, db
import json
import os

from flask_migrate import Migrate
from flask.cli import FlaskGroup
import click
from flask import current_app
from certbatch.constants import DEFAULT_CATEGORY
from certbatch.errors import CertbatchError, ParticipantValidationError
from certbatch.models import Batch
from certbatch.services.batch_generation import (
    generate_batch,
    get_batch_progress,
    regenerate_failed,
)
from certbatch.services.participant_import import (
    export_participants_csv,
    import_participants,
)
from certbatch.services.templates import add_template
from certbatch.shared.cert_ids import default_id_generator
from certbatch.shared.object_storage import storage_from_config
from certbatch.shared.storage import remove_batch_files


migrate = Migrate()


def create_certbatch_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certbatch_app)


def _echo_progress(event):
    line = f"[{event.processed}/{event.total}] {event.current_participant}"
    if event.error:
        line += f" FAILED: {event.error}"
    click.echo(line)


def _echo_failures(failures):
    for failure in failures:
        for err in failure.errors:
            click.echo(f"row {failure.row}: {err.field}: {err.message}", err=True)


def _require_storage():
    storage = storage_from_config(current_app.config)
    if storage is None:
        raise click.ClickException("CERT_S3_BUCKET is not configured")
    return storage


@cli.command("add_template")
@click.option("--file", "path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--name", required=True)
@click.option("--placement", "placement_path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--category", "categories", multiple=True)
def add_template_cmd(path: str, name: str, placement_path: str, categories):
    """Register a PDF or image template with its placement JSON."""
    with open(placement_path, encoding="utf-8") as fh:
        try:
            placement = json.load(fh)
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"Placement file is not valid JSON: {exc}")
    with open(path, "rb") as fh:
        data = fh.read()
    try:
        template = add_template(os.path.basename(path), data, name, placement, categories)
    except (CertbatchError, ValueError) as exc:
        raise click.ClickException(str(exc))
    click.echo(f"template={template.id} kind={template.surface_kind}")


@cli.command("import_participants")
@click.option("--file", "path", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--batch-name", required=True)
@click.option("--template", "template_id", required=True, type=int)
@click.option("--category", "categories", multiple=True)
def import_participants_cmd(path: str, batch_name: str, template_id: int, categories):
    """Create a batch from a CSV or Excel participant sheet."""
    with open(path, "rb") as fh:
        data = fh.read()
    try:
        result = import_participants(
            os.path.basename(path), data, batch_name, template_id, categories
        )
    except ParticipantValidationError as exc:
        _echo_failures(exc.failures)
        raise click.ClickException(str(exc))
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    _echo_failures(result.failures)
    click.echo(
        f"batch={result.batch.id} participants={len(result.participants)} "
        f"rejected={len(result.failures)} rows={result.total_rows}"
    )


@cli.command("gen_batch")
@click.option("--batch", "batch_id", required=True, type=int)
def gen_batch(batch_id: int):
    """Generate certificates for every participant in a batch."""
    try:
        result = generate_batch(batch_id, progress=_echo_progress)
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    click.echo(
        f"status={result.status} total={result.total} succeeded={result.succeeded} "
        f"failed={result.failed} storage_errors={len(result.storage_errors)}"
    )


@cli.command("regen_batch")
@click.option("--batch", "batch_id", required=True, type=int)
def regen_batch(batch_id: int):
    """Retry participants that have no rendered certificate yet."""
    try:
        result = regenerate_failed(batch_id, progress=_echo_progress)
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    click.echo(
        f"status={result.status} total={result.total} succeeded={result.succeeded} "
        f"failed={result.failed}"
    )


@cli.command("batch_progress")
@click.option("--batch", "batch_id", required=True, type=int)
@click.option("--verbose", is_flag=True, help="List every participant")
def batch_progress(batch_id: int, verbose: bool):
    try:
        snapshot = get_batch_progress(batch_id)
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    click.echo(
        f"status={snapshot.status} generated={snapshot.generated}/{snapshot.total} "
        f"progress={snapshot.percent:.1f}%"
    )
    if verbose:
        for p in snapshot.participants:
            local = "yes" if p["has_local_certificate"] else "no"
            cloud = "yes" if p["has_cloud_certificate"] else "no"
            click.echo(f"{p['certificate_id']} {p['name']} local={local} cloud={cloud}")


@cli.command("export_participants")
@click.option("--batch", "batch_id", required=True, type=int)
def export_participants(batch_id: int):
    batch = db.session.get(Batch, batch_id)
    if not batch:
        click.echo("Not found", err=True)
        return
    click.echo(export_participants_csv(batch.participants), nl=False)


@cli.command("gen_ids")
@click.option("--count", required=True, type=click.IntRange(1, 1000))
@click.option("--prefix", default=None)
@click.option("--batch", "batch_id", default=None, type=int)
def gen_ids(count: int, prefix, batch_id):
    """Issue certificate IDs through the ledger."""
    try:
        generator = default_id_generator(prefix)
    except ValueError as exc:
        raise click.ClickException(str(exc))
    result = generator.bulk_generate(count, batch_id=batch_id)
    for cid in result.ids:
        click.echo(cid)
    for err in result.errors:
        click.echo(f"#{err['index']}: {err['error']}", err=True)


@cli.command("id_stats")
def id_stats():
    stats = default_id_generator().stats()
    click.echo(f"total={stats.total}")
    for prefix, count in sorted(stats.by_prefix.items()):
        click.echo(f"{prefix}={count}")


@cli.command("cert_storage_stats")
def cert_storage_stats():
    storage = _require_storage()
    try:
        stats = storage.storage_stats()
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    click.echo(json.dumps(stats, indent=2))


@cli.command("cert_storage_lifecycle")
def cert_storage_lifecycle():
    """Install the certificate/template lifecycle rules on the bucket."""
    storage = _require_storage()
    try:
        rules = storage.install_lifecycle_policy()
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"rules={rules}")


@cli.command("purge_batch_storage")
@click.option("--batch", "batch_id", required=True, type=int)
@click.option("--local", "purge_local", is_flag=True, help="Also remove local PDFs")
def purge_batch_storage(batch_id: int, purge_local: bool):
    """Delete a batch's stored certificates across all generation dates."""
    batch = db.session.get(Batch, batch_id)
    if not batch:
        click.echo("Not found", err=True)
        return
    storage = _require_storage()
    category = batch.primary_category or current_app.config.get("CERT_DEFAULT_CATEGORY", DEFAULT_CATEGORY)
    try:
        keys = [obj.key for obj in storage.batch_certificates_any_date(batch.id, category)]
        prefixes = sorted({key.rsplit("/", 1)[0] + "/" for key in keys})
        deleted = failed = 0
        for prefix in prefixes:
            summary = storage.delete_prefix(prefix)
            deleted += summary["deleted"]
            failed += summary["failed"]
    except CertbatchError as exc:
        raise click.ClickException(str(exc))
    removed = 0
    if purge_local:
        removed = remove_batch_files(current_app.config.get("SITE_ROOT", "/srv"), batch.id)
    summary = f"batch={batch.id} deleted={deleted} failed={failed} local_removed={removed}"
    click.echo(summary)
    current_app.logger.info("[CERT-STORE] purge %s", summary)


if __name__ == "__main__":
    cli()
