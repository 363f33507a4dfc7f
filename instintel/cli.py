import json
import sys
from pathlib import Path

import click

from .config import VALID_ENVIRONMENTS, DEFAULT_ENVIRONMENT, DEFAULT_CONFIG_PATH
from .sync.budget import BudgetGuard
from .sync.config import SyncConfig, validate_source_url
from .sync.error_tracker import SyncException
from .sync.logging_manager import LoggingManager
from .sync.models import ImportOptions, InstitutionSyncSettings, SyncFrequency
from .sync.orchestrator import FetchExtractResult, SyncOrchestrator
from .sync.phases import SyncProgress
from .sync.repository import SQLiteDirectoryRepository
from .sync.sync_log import SyncLog

FREQUENCIES = [f.value for f in SyncFrequency]


def load_config(path):
    """Config from `path`, or from the default location when it exists, or the built-in defaults."""
    if path:
        return SyncConfig.from_yaml(path)
    if DEFAULT_CONFIG_PATH.exists():
        return SyncConfig.from_yaml(DEFAULT_CONFIG_PATH)
    return SyncConfig()


def echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def echo_progress(event: SyncProgress):
    click.echo(f"[{event.phase.value:>10}] {event.progress:3d}% {event.current_step}", err=True)


def import_options(config, create_divisions, update_existing, replace_all):
    defaults = config.import_options
    return ImportOptions(
        create_divisions_automatically=defaults.create_divisions_automatically if create_divisions is None else create_divisions,
        update_existing_contacts=defaults.update_existing_contacts if update_existing is None else update_existing,
        replace_all_contacts=defaults.replace_all_contacts if replace_all is None else replace_all,
    )


def import_option_flags(func):
    func = click.option('--replace-all/--no-replace-all', 'replace_all', default=None,
                        help='Delete all existing contacts before importing')(func)
    func = click.option('--update-existing/--no-update-existing', 'update_existing', default=None,
                        help='Update contacts matched by email instead of inserting duplicates')(func)
    func = click.option('--create-divisions/--no-create-divisions', 'create_divisions', default=None,
                        help='Create divisions that do not exist yet')(func)
    return func


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Path to the sync configuration YAML')
@click.option('--environment', type=click.Choice(VALID_ENVIRONMENTS), default=DEFAULT_ENVIRONMENT,
              help='Selects which OPENAI_API_KEY_<ENV> to use')
@click.pass_context
def cli(ctx, config_path, environment):
    """Institution contact directory sync."""
    config = load_config(config_path)
    # stdout carries command results
    LoggingManager().reconfigure(log_level=config.log_level, log_file=config.log_file, stream=sys.stderr)
    ctx.obj = {'config': config, 'environment': environment}


@cli.command(name='init-config')
@click.argument('output', type=click.Path(dir_okay=False))
@click.option('--force', is_flag=True, help='Overwrite an existing file')
@click.pass_context
def init_config(ctx, output, force):
    """Write the effective configuration to a YAML file."""
    path = Path(output)
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists; use --force to overwrite")
    ctx.obj['config'].to_yaml(path)
    click.echo(f"Configuration written to {path}")


def get_repository(ctx) -> SQLiteDirectoryRepository:
    return SQLiteDirectoryRepository(ctx.obj['config'].database_path)


def get_orchestrator(ctx, with_extraction: bool = True) -> SyncOrchestrator:
    try:
        return SyncOrchestrator.from_config(ctx.obj['config'], ctx.obj['environment'],
                                            with_extraction=with_extraction, log_stream=sys.stderr)
    except SyncException as e:
        raise click.ClickException(e.message)


# ========================================
# Institutions
# ========================================

@cli.group(name='institution')
def institution_group():
    """Manage institutions."""
    pass


@institution_group.command(name='add')
@click.argument('name')
@click.option('--id', 'institution_id', default=None, help='Explicit institution id')
@click.option('--url', 'source_url', default=None, help='Source URL of the contact page')
@click.option('--auto-sync/--no-auto-sync', default=False)
@click.option('--frequency', type=click.Choice(FREQUENCIES), default=SyncFrequency.WEEKLY.value)
@click.pass_context
def institution_add(ctx, name, institution_id, source_url, auto_sync, frequency):
    """Register an institution."""
    config = ctx.obj['config']
    if source_url:
        try:
            validate_source_url(source_url, allow_local_files=config.fetch.allow_local_files)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--url')
    institution = get_repository(ctx).create_institution(
        name,
        institution_id=institution_id,
        sync_settings=InstitutionSyncSettings(
            source_url=source_url,
            auto_sync_enabled=auto_sync,
            sync_frequency=SyncFrequency(frequency),
        )
    )
    click.echo(institution.id)


@institution_group.command(name='list')
@click.pass_context
def institution_list(ctx):
    """List institutions."""
    for institution in get_repository(ctx).list_institutions():
        click.echo(f"{institution.id}\t{institution.name}\t{institution.sync_settings.source_url or '-'}")


@institution_group.command(name='show')
@click.argument('institution_id')
@click.pass_context
def institution_show(ctx, institution_id):
    """Show sync status for an institution."""
    orchestrator = get_orchestrator(ctx, with_extraction=False)
    institution = orchestrator.repository.get_institution(institution_id)
    if institution is None:
        raise click.ClickException(f"Institution not found: {institution_id}")
    status = orchestrator.sync_status(institution_id)
    status.update({
        'id': institution.id,
        'name': institution.name,
        'source_url': institution.sync_settings.source_url,
        'content_hash': institution.sync_settings.content_hash,
    })
    echo_json(status)


@cli.group(name='settings')
def settings_group():
    """Per-institution sync settings."""
    pass


@settings_group.command(name='set')
@click.argument('institution_id')
@click.option('--url', 'source_url', default=None)
@click.option('--auto-sync/--no-auto-sync', default=None)
@click.option('--frequency', type=click.Choice(FREQUENCIES), default=None)
@click.pass_context
def settings_set(ctx, institution_id, source_url, auto_sync, frequency):
    """Update source URL, auto-sync flag or frequency."""
    config = ctx.obj['config']
    fields = {}
    if source_url is not None:
        try:
            validate_source_url(source_url, allow_local_files=config.fetch.allow_local_files)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--url')
        fields['source_url'] = source_url
    if auto_sync is not None:
        fields['auto_sync_enabled'] = auto_sync
    if frequency is not None:
        fields['sync_frequency'] = SyncFrequency(frequency)
    try:
        settings = get_repository(ctx).update_sync_settings(institution_id, **fields)
    except KeyError:
        raise click.ClickException(f"Institution not found: {institution_id}")
    echo_json({
        'source_url': settings.source_url,
        'auto_sync_enabled': settings.auto_sync_enabled,
        'sync_frequency': SyncFrequency(settings.sync_frequency).value,
    })


# ========================================
# Sync phases
# ========================================

@cli.command(name='sync')
@click.argument('institution_id')
@click.option('--url', 'source_url', default=None, help='Override (and store) the source URL')
@import_option_flags
@click.pass_context
def sync(ctx, institution_id, source_url, create_divisions, update_existing, replace_all):
    """Fetch, extract and import without review."""
    orchestrator = get_orchestrator(ctx)
    options = import_options(ctx.obj['config'], create_divisions, update_existing, replace_all)
    result = orchestrator.full_sync(institution_id, source_url, options, on_progress=echo_progress)
    echo_json({
        'success': result.success,
        'phase': result.phase.value,
        'contacts_imported': result.contacts_imported,
        'divisions_created': result.divisions_created,
        'tokens_used': result.tokens_used,
        'cost_usd': result.cost_usd,
        'changes_detected': result.changes_detected,
        'error': result.error,
    })
    if not result.success:
        sys.exit(1)


@cli.command(name='extract')
@click.argument('institution_id')
@click.option('--url', 'source_url', default=None)
@click.option('--output', '-o', type=click.Path(dir_okay=False), required=True,
              help='Where to write the preview JSON for review')
@click.pass_context
def extract(ctx, institution_id, source_url, output):
    """Fetch and extract contacts into a preview file; nothing is imported."""
    orchestrator = get_orchestrator(ctx)
    result = orchestrator.fetch_and_extract(institution_id, source_url, on_progress=echo_progress)
    if not result.success:
        echo_json({'success': False, 'error': result.error,
                   'tokens_used': result.tokens_used, 'cost_usd': result.cost_usd})
        sys.exit(1)
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
    click.echo(f"Preview written to {path} ({result.data.contact_count()} contacts, "
               f"changes detected: {result.changes_detected})")


@cli.command(name='import')
@click.argument('institution_id')
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@import_option_flags
@click.pass_context
def import_file(ctx, institution_id, input_file, create_divisions, update_existing, replace_all):
    """
    Import a reviewed preview file (from `extract`) or a manual contacts JSON file.
    """
    orchestrator = get_orchestrator(ctx, with_extraction=False)
    options = import_options(ctx.obj['config'], create_divisions, update_existing, replace_all)
    with open(input_file, 'r', encoding='utf-8') as f:
        text = f.read()

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict) and isinstance(payload.get('data'), dict) and payload.get('content_hash'):
        preview = FetchExtractResult.from_dict(payload)
    else:
        preview = orchestrator.load_manual_import(institution_id, text, on_progress=echo_progress)
        if not preview.success:
            raise click.ClickException(preview.error)

    result = orchestrator.import_contacts(
        institution_id, preview.data, preview.content_hash, options,
        on_progress=echo_progress, extraction=preview
    )
    echo_json({
        'success': result.success,
        'phase': result.phase.value,
        'contacts_imported': result.contacts_imported,
        'divisions_created': result.divisions_created,
        'skipped': [s.to_dict() for s in result.skipped],
        'error': result.error,
    })
    if not result.success:
        sys.exit(1)


# ========================================
# Budget, history, scheduling
# ========================================

@cli.group(name='budget')
def budget_group():
    """Monthly API budget."""
    pass


@budget_group.command(name='show')
@click.pass_context
def budget_show(ctx):
    guard = BudgetGuard(get_repository(ctx), ctx.obj['config'].budget)
    echo_json(guard.status())


@budget_group.command(name='set')
@click.option('--limit', 'monthly_limit_usd', type=float, default=None, help='Monthly limit in USD')
@click.option('--threshold', 'alert_threshold_percent', type=click.IntRange(0, 100), default=None)
@click.option('--pause/--no-pause', 'pause_on_exhausted', default=None)
@click.pass_context
def budget_set(ctx, monthly_limit_usd, alert_threshold_percent, pause_on_exhausted):
    guard = BudgetGuard(get_repository(ctx), ctx.obj['config'].budget)
    settings = guard.update_settings(monthly_limit_usd, alert_threshold_percent, pause_on_exhausted)
    echo_json(settings.model_dump())


@cli.command(name='history')
@click.argument('institution_id')
@click.option('--limit', type=int, default=10)
@click.pass_context
def history(ctx, institution_id, limit):
    """Most recent sync attempts."""
    for entry in SyncLog(get_repository(ctx)).history(institution_id, limit):
        click.echo(
            f"{entry.synced_at.isoformat()[:19]} | {entry.status.value:7} | "
            f"{entry.contacts_imported}/{entry.contacts_found} contacts | "
            f"{entry.divisions_created} divisions | ${entry.cost_usd:.3f}"
            + (f" | {entry.error_message}" if entry.error_message else "")
        )


@cli.command(name='due')
@click.pass_context
def due(ctx):
    """Institutions whose auto-sync is due."""
    orchestrator = get_orchestrator(ctx, with_extraction=False)
    for institution_id in orchestrator.institutions_needing_sync():
        click.echo(institution_id)


def main():
    cli()

if __name__ == '__main__':
    main()
