"""Runtime context shared by every ledger operation.

The context bundles the parsed settings, the live workbook, the record store
built on top of it, and the :class:`ShopSession` that resolves which shop the
signed-in user writes to. It is passed explicitly to every operation instead
of living in module-level state, so signing out invalidates exactly one
session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SHOP_ID
from .errors import StaleWorkbookError, ValidationError


ShopLookup = Callable[[Optional[str]], Optional[str]]


@dataclass
class ShopSession:
    """Signed-in user plus the lazily resolved shop identity.

    ``lookup`` plays the role of ``get_shop_id_for_current_user``. Its answer
    is cached on the session after the first successful resolution and
    dropped by :meth:`sign_out`.
    """

    user_id: Optional[str]
    lookup: ShopLookup = field(repr=False)
    _shop_id: Optional[str] = field(default=None, repr=False)

    def shop_id(self) -> Optional[str]:
        if self._shop_id is None and self.user_id:
            self._shop_id = self.lookup(self.user_id)
            log.debug("Resolved shop '%s' for user '%s'", self._shop_id, self.user_id)
        return self._shop_id

    def require_shop_id(self) -> str:
        """Return the shop identity or raise when the user has none."""
        shop_id = self.shop_id()
        if shop_id is None:
            log.warning("No shop assigned to user '%s'", self.user_id)
            raise ValidationError("Current user is not assigned to a shop")
        return shop_id

    def sign_out(self) -> None:
        log.info("Signing out user '%s'", self.user_id)
        self.user_id = None
        self._shop_id = None


@dataclass
class WorkbookSnapshot:
    """Digest of the workbook file as it was when this context read it.

    ``digest`` is ``None`` for contexts built around a workbook that was not
    read through :func:`load_runtime_context`; saving those is unchecked.
    """

    digest: Optional[str] = None


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, storage and session used by the ledgers."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: data_manager.WorkbookRecordStore
    session: ShopSession
    snapshot: WorkbookSnapshot = field(default_factory=WorkbookSnapshot)

    def shop_id(self) -> str:
        return self.session.require_shop_id()

    def tagged(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Return ``row`` stamped with the current shop identity."""
        return {**row, SHOP_ID: self.shop_id()}

    def shop_filters(self, **filters: Any) -> Dict[str, Any]:
        """Return equality filters restricted to the current shop."""
        return {SHOP_ID: self.shop_id(), **filters}


def build_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    user_id: Optional[str] = None,
    lookup: Optional[ShopLookup] = None,
    digest: Optional[str] = None,
) -> RuntimeContext:
    """Assemble a context around an already opened workbook.

    ``user_id`` defaults to the configured session user and ``lookup`` to the
    ``ShopMembers`` sheet of ``workbook``. ``digest`` identifies the file
    contents ``workbook`` was read from.
    """
    session = ShopSession(
        user_id=user_id if user_id is not None else settings.user_id,
        lookup=lookup or partial(data_manager.lookup_shop_id, workbook),
    )
    store = data_manager.WorkbookRecordStore(workbook)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        store=store,
        session=session,
        snapshot=WorkbookSnapshot(digest),
    )


def load_runtime_context(config_path: Optional[Path] = None, *, user_id: Optional[str] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the ledgers.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        user_id (str | None): Signs in a user other than the configured one.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook, digest = data_manager.load_workbook_snapshot(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook, user_id=user_id, digest=digest)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file.

    The save is refused when the file on disk no longer matches the bytes the
    context was loaded from: another session saved in between and writing now
    would silently drop its changes.

    Raises:
        StaleWorkbookError: If the data file changed since it was loaded.
    """
    data_file = context.settings.data_file
    expected = context.snapshot.digest
    if expected is not None and data_manager.file_digest(data_file) != expected:
        log.error("Workbook '%s' changed on disk since it was loaded; not saving", data_file)
        raise StaleWorkbookError(f"Workbook '{data_file}' was modified by another session; reload and retry")
    data_manager.save_workbook(context.workbook, destination=data_file)
    context.snapshot.digest = data_manager.file_digest(data_file)
    log.info("Persisted workbook '%s'", data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The returned context keeps the same session, so the signed-in user and
    any resolved shop identity carry over. A session that resolves its shop
    from the workbook is pointed at the reloaded one.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook, digest = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    session = context.session
    if isinstance(session.lookup, partial) and session.lookup.func is data_manager.lookup_shop_id:
        session.lookup = partial(data_manager.lookup_shop_id, workbook)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        store=data_manager.WorkbookRecordStore(workbook),
        session=session,
        snapshot=WorkbookSnapshot(digest),
    )


def sign_out(context: RuntimeContext) -> None:
    """Invalidate the session so no further writes are tagged for its shop."""
    context.session.sign_out()


def utc_now() -> datetime:
    return datetime.now(UTC)
