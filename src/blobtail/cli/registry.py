"""blobtail registry: inspect and repair the shared registry."""

from __future__ import annotations

import typer

from blobtail.cli import _exitcodes as ec
from blobtail.cli._output import print_error, print_object, print_table
from blobtail.cli._storage import build_config, open_store
from blobtail.errors import (
    LeaseContentionError,
    RegistryCorruptError,
    RegistryNotFoundError,
    StorageBackendError,
)
from blobtail.lease import LeaseManager
from blobtail.registry import RegistryStore
from blobtail.scheduler import release_owner

app = typer.Typer(no_args_is_help=True)

HEADERS = ["path", "offset", "generation", "owner", "etag"]


@app.command("show")
def show_cmd() -> None:
    """Print every tracked blob with its offset, generation and owner."""
    from blobtail.cli import state

    config = build_config()
    store = open_store(config)
    try:
        registry = RegistryStore(store, config.registry_path).load()
    except RegistryNotFoundError:
        print_error(f"No registry at '{config.registry_path}'")
        raise typer.Exit(ec.REGISTRY_ERROR)
    except RegistryCorruptError as e:
        print_error(str(e))
        raise typer.Exit(ec.REGISTRY_ERROR)
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.STORAGE_ERROR)
    finally:
        store.close()

    rows = [
        [item.path, item.offset, item.generation, item.owner, item.etag]
        for item in sorted(registry.values(), key=lambda i: i.path)
    ]
    print_table(HEADERS, rows, json_mode=state.json_output)


@app.command("release")
def release_cmd(
    reader: str = typer.Argument(..., help="Reader id whose claims should be cleared"),
) -> None:
    """Clear ownership held by a reader that is no longer running."""
    from blobtail.cli import state

    config = build_config()
    store = open_store(config)
    leases = LeaseManager(
        store,
        duration=config.registry_lease_duration,
        max_retries=config.lease_retry_count,
        retry_interval=config.lease_retry_interval_s,
    )
    registry_store = RegistryStore(store, config.registry_path)
    try:
        with leases.held(config.lock_path):
            registry = registry_store.load()
            released = release_owner(registry, reader)
            if released:
                registry_store.save(registry)
    except RegistryNotFoundError:
        print_error(f"No registry at '{config.registry_path}'")
        raise typer.Exit(ec.REGISTRY_ERROR)
    except RegistryCorruptError as e:
        print_error(str(e))
        raise typer.Exit(ec.REGISTRY_ERROR)
    except LeaseContentionError as e:
        print_error(str(e))
        raise typer.Exit(ec.LEASE_ERROR)
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.STORAGE_ERROR)
    finally:
        store.close()

    print_object({"reader": reader, "released": released}, json_mode=state.json_output)
