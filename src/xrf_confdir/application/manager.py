"""Configuration manager: the orchestrator behind every CLI operation.

Purpose
-------
Compose the protocol catalog, template engine, port allocator, fragment store
and backup manager into the operator-level operations (``add``, ``remove``,
``update``, ``list``, ``info``, ``url``, ``backup``, ``restore``,
``validate``). Every mutation runs inside a :class:`Transaction`:

``idle → backed_up → mutated → validated → committed``
    on success; the snapshot is discarded.
``idle → backed_up → rolled_back``
    on any failure after the snapshot; the directory is put back byte for byte
    and the original exception propagates. When the rollback itself fails the
    snapshot stays on disk and its path is in the error's ``snapshot`` context.

Input errors (unknown protocol, malformed option) and state errors (duplicate
or unknown tag) are raised before a snapshot is taken.

System Role
-----------
Pure orchestration. Collaborators arrive through the constructor; the
composition root :func:`xrf_confdir.core.build_manager` wires the defaults.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from ..adapters.archive.backup import BackupManager
from ..adapters.fragments.store import TAIL_SUFFIX, FragmentStore
from ..adapters.network.ports import PortAllocator, port_family_for
from ..domain.errors import (
    BackupError,
    ConfigConflict,
    FragmentIOError,
    InvalidFormat,
    InvalidOption,
    NotFound,
    PortUnavailable,
    ProtocolNotSupported,
    XrfError,
)
from ..domain.fragments import BASE, DNS, INBOUND, OUTBOUND, ROUTING, FragmentMeta, ProtocolInfo
from ..domain.parameters import (
    HttpUpgradeParameters,
    RealityParameters,
    ShadowsocksParameters,
    TemplateParameters,
    WebSocketParameters,
)
from ..domain.protocols import (
    DEFAULT_HTTPUPGRADE_PATH,
    DEFAULT_REALITY_DEST,
    DEFAULT_SS2022_METHOD,
    DEFAULT_SS_METHOD,
    DEFAULT_WS_PATH,
    HTTPUPGRADE,
    REALITY,
    SHADOWSOCKS,
    SHADOWSOCKS_2022,
    WEBSOCKET,
    ProtocolCatalog,
    ProtocolDescriptor,
)
from ..observability import log_debug, log_error, log_info, log_warning, make_event, new_trace_id
from .documents import apply_update, primary_inbound, summarize_inbound, validate_options
from .merge import merge_fragments
from .ports import ReloadNotifier, SecretGenerator, ShareUrlFormatter, Validator
from .templates import TemplateEngine

IDLE = "idle"
BACKED_UP = "backed_up"
MUTATED = "mutated"
VALIDATED = "validated"
COMMITTED = "committed"
ROLLED_BACK = "rolled_back"

BASE_FRAGMENTS: tuple[tuple[str, str, str], ...] = (
    (BASE, "system", "base"),
    (DNS, "default", "dns"),
    (OUTBOUND, "direct", "direct-outbound"),
    (OUTBOUND, "block", "block-outbound"),
    (ROUTING, "basic", "basic-routing"),
    (ROUTING, "tail", "tail-routing"),
)
"""``(category, name, template)`` written by :meth:`ConfigManager.initialize`."""

_TAG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_OPTION_ALIASES = {
    "privateKey": "private_key",
    "serverName": "server_name",
    "shortId": "short_id",
    "certFile": "cert_file",
    "keyFile": "key_file",
}


class Transaction:
    """Record of one mutation's progress through the state machine."""

    def __init__(self, operation: str, tag: str | None) -> None:
        self.operation = operation
        self.tag = tag
        self.state = IDLE
        self.history: list[str] = [IDLE]
        self.snapshot: Path | None = None
        self.error: BaseException | None = None

    def advance(self, state: str) -> None:
        self.state = state
        self.history.append(state)
        log_debug("transaction_state", **make_event(self.operation, self.tag, {"state": state}))


class ConfigManager:
    """Manage protocol units in a fragment directory.

    Parameters
    ----------
    store, catalog, templates, allocator, backups:
        Core components.
    validator, secrets, share, notifier:
        Collaborators implementing the ports in
        :mod:`xrf_confdir.application.ports`.
    validate:
        Default for the per-call ``validate`` flag; ``False`` skips the
        daemon dry run unless a call asks for it.
    reload_on_commit:
        Call the notifier after each committed mutation.
    share_host:
        Host used in share URLs when the caller supplies none.
    """

    def __init__(
        self,
        store: FragmentStore,
        *,
        catalog: ProtocolCatalog,
        templates: TemplateEngine,
        allocator: PortAllocator,
        backups: BackupManager,
        validator: Validator,
        secrets: SecretGenerator,
        share: ShareUrlFormatter,
        notifier: ReloadNotifier,
        validate: bool = True,
        reload_on_commit: bool = False,
        share_host: str = "localhost",
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.templates = templates
        self.allocator = allocator
        self.backups = backups
        self.validator = validator
        self.secrets = secrets
        self.share = share
        self.notifier = notifier
        self.validate_by_default = validate
        self.reload_on_commit = reload_on_commit
        self.share_host = share_host
        self.last_transaction: Transaction | None = None

    @property
    def confdir(self) -> Path:
        return self.store.confdir

    # ------------------------------------------------------------------ setup

    def initialize(self) -> list[Path]:
        """Create the directory and any missing base fragments; return the files written."""

        new_trace_id()
        self.store.ensure()
        created: list[Path] = []
        for category, name, template in BASE_FRAGMENTS:
            path = self.store.path_for(category, name)
            if path.exists():
                log_debug("base_fragment_present", path=str(path))
                continue
            created.append(self.store.write(category, name, self.templates.render(template, {})))
        log_info("confdir_initialized", path=str(self.confdir), created=[p.name for p in created])
        return created

    # -------------------------------------------------------------- mutations

    def add_protocol(
        self,
        protocol: str,
        tag: str = "",
        options: Mapping[str, Any] | None = None,
        *,
        validate: bool | None = None,
    ) -> ProtocolInfo:
        """Render and write a new inbound fragment for *protocol*.

        Examples
        --------
        >>> from xrf_confdir.testing import sandbox_manager
        >>> manager = sandbox_manager()
        >>> info = manager.add_protocol("ss", "ss1", {"port": 8388})
        >>> info.type, info.port, info.config_file
        ('shadowsocks', 8388, '10-inbound-ss1.json')
        """

        new_trace_id()
        descriptor = self.catalog.resolve(protocol)
        opts = _normalized(options)
        tag = tag or descriptor.template.replace("-", "_")
        self._check_tag(tag)
        if self.store.find_by_tag(tag):
            raise ConfigConflict(f"protocol with tag '{tag}' already exists", tag=tag)
        path = self.store.path_for(INBOUND, tag)
        if path.exists():
            raise ConfigConflict(f"fragment {path.name} already exists", tag=tag, path=str(path))

        with self._transaction("add", tag, validate) as txn:
            parameters = self._parameters(descriptor, tag, opts)
            document = self.templates.render(descriptor.template, parameters)
            self.store.write(INBOUND, tag, document)
            txn.advance(MUTATED)
        log_info("protocol_added", **make_event("add", tag, {"protocol": descriptor.name, "port": parameters.port}))
        return self.get_protocol_info(tag)

    def remove_protocol(self, tag: str, *, validate: bool | None = None) -> list[str]:
        """Delete every fragment referencing *tag*; return their filenames."""

        new_trace_id()
        fragments = self.store.find_by_tag(tag)
        if not fragments:
            raise NotFound(f"protocol with tag '{tag}' not found", tag=tag)
        with self._transaction("remove", tag, validate) as txn:
            self.store.remove(fragments)
            txn.advance(MUTATED)
        removed = [meta.filename for meta in fragments]
        log_info("protocol_removed", **make_event("remove", tag, {"files": removed}))
        return removed

    def update_protocol(
        self,
        tag: str,
        options: Mapping[str, Any] | None = None,
        *,
        validate: bool | None = None,
    ) -> ProtocolInfo:
        """Patch the unit's primary fragment with *options*.

        An empty *options* mapping is a no-op: nothing is backed up or written.
        """

        new_trace_id()
        opts = _normalized(options)
        fragments = self.store.find_by_tag(tag)
        if not fragments:
            raise NotFound(f"protocol with tag '{tag}' not found", tag=tag)
        primary = next((meta for meta in fragments if meta.category == INBOUND), fragments[0])
        if not opts:
            log_debug("update_noop", **make_event("update", tag, {"path": str(primary.path)}))
            return self.get_protocol_info(tag)
        if "port" in opts:
            self._check_port_change(tag, primary, opts["port"])

        with self._transaction("update", tag, validate) as txn:
            document = self.store.read(primary.path)
            self.store.write_path(primary.path, apply_update(document, opts))
            txn.advance(MUTATED)
        log_info("protocol_updated", **make_event("update", tag, {"keys": sorted(opts)}))
        return self.get_protocol_info(tag)

    # -------------------------------------------------------------- read-only

    def list_protocols(self) -> list[ProtocolInfo]:
        """Return one :class:`ProtocolInfo` per readable inbound fragment."""

        result: list[ProtocolInfo] = []
        for meta in self.store.list():
            if meta.category != INBOUND:
                continue
            try:
                document = self.store.read(meta.path)
                inbound = primary_inbound(document)
            except (InvalidFormat, NotFound, FragmentIOError) as exc:
                log_warning("protocol_unreadable", path=str(meta.path), error=exc.message)
                continue
            result.append(self._info(meta, inbound))
        return result

    def get_protocol_info(self, tag: str) -> ProtocolInfo:
        """Return the projection of the inbound carrying *tag*."""

        for meta in self.store.find_by_tag(tag):
            document = self.store.read(meta.path)
            inbounds = document.get("inbounds")
            for inbound in inbounds if isinstance(inbounds, list) else []:
                if isinstance(inbound, dict) and inbound.get("tag") == tag:
                    return self._info(meta, inbound)
        raise NotFound(f"protocol with tag '{tag}' not found", tag=tag)

    def generate_share_url(self, tag: str, host: str | None = None) -> str:
        """Return a client share URL for *tag*."""

        info = self.get_protocol_info(tag)
        if not info.protocol:
            raise ProtocolNotSupported(
                f"cannot build a share URL for {info.type or 'unknown'} inbound '{tag}'",
                tag=tag,
                protocol=info.type,
            )
        fields = dict(info.summary)
        if fields.get("private_key"):
            fields["public_key"] = self.secrets.public_key_from_private(fields["private_key"])
        return self.share.format(info.protocol, tag, fields, host or self.share_host)

    def merged_config(self) -> tuple[dict[str, Any], dict[str, dict[str, object]]]:
        """Preview the merged configuration and its per-tag provenance."""

        return merge_fragments((meta, self.store.read(meta.path)) for meta in self.store.list())

    # ---------------------------------------------------------------- backups

    def backup_config(self, path: str | Path | None = None) -> Path:
        new_trace_id()
        return self.backups.backup(path)

    def restore_config(self, path: str | Path) -> dict[str, Any]:
        """Replace the directory with an archive's tree and return its manifest."""

        new_trace_id()
        manifest = self.backups.restore(path)
        self._notify()
        return manifest

    def validate_config(self) -> None:
        """Run the validator against the directory regardless of the default flag."""

        new_trace_id()
        self.validator.validate(self.confdir)

    def reload(self) -> None:
        self.notifier.reload()

    # ---------------------------------------------------------------- helpers

    @contextmanager
    def _transaction(self, operation: str, tag: str | None, validate: bool | None) -> Iterator[Transaction]:
        """Snapshot, run the body, validate, then commit or roll back."""

        txn = Transaction(operation, tag)
        self.last_transaction = txn
        try:
            txn.snapshot = self.backups.snapshot()
        except BackupError as exc:
            log_warning("snapshot_failed", **make_event(operation, tag, {"error": exc.message}))
        txn.advance(BACKED_UP)
        keep_snapshot = False
        try:
            yield txn
            if self.validate_by_default if validate is None else validate:
                self.validator.validate(self.confdir)
            txn.advance(VALIDATED)
        except Exception as exc:
            txn.error = exc
            keep_snapshot = not self._rollback(txn, exc)
            raise
        finally:
            if txn.snapshot is not None and not keep_snapshot:
                self.backups.discard(txn.snapshot)
        txn.advance(COMMITTED)
        self._notify()

    def _rollback(self, txn: Transaction, exc: Exception) -> bool:
        """Restore the snapshot; return ``False`` when the directory is left mutated.

        On failure the snapshot is kept on disk and its path is attached to
        the error as ``snapshot``.
        """

        message = exc.message if isinstance(exc, XrfError) else str(exc)
        if txn.snapshot is None:
            log_error("mutation_failed_without_snapshot", **make_event(txn.operation, txn.tag, {"error": message}))
            return True
        try:
            self.backups.rollback(txn.snapshot)
        except BackupError as rollback_exc:
            snapshot = str(txn.snapshot)
            log_error(
                "rollback_failed",
                **make_event(txn.operation, txn.tag, {"error": rollback_exc.message, "snapshot": snapshot}),
            )
            if isinstance(exc, XrfError):
                exc.with_context(rollback_error=rollback_exc.message, snapshot=snapshot)
            return False
        txn.advance(ROLLED_BACK)
        log_warning("mutation_rolled_back", **make_event(txn.operation, txn.tag, {"error": message}))
        return True

    def _notify(self) -> None:
        if not self.reload_on_commit:
            return
        try:
            self.notifier.reload()
        except XrfError as exc:
            log_warning("reload_failed", error=exc.message, **exc.context)

    def _check_tag(self, tag: str) -> None:
        if not _TAG_PATTERN.match(tag):
            raise InvalidOption(f"invalid tag: {tag!r}", tag=tag)
        if tag.endswith(TAIL_SUFFIX):
            # the suffix marks tail fragments in the filename grammar
            raise InvalidOption(f"tag must not end with {TAIL_SUFFIX!r}: {tag!r}", tag=tag)

    def _check_port_change(self, tag: str, primary: FragmentMeta, port: int) -> None:
        """Reject a new port that something else already holds."""

        document = self.store.read(primary.path)
        inbounds = document.get("inbounds")
        current = {i.get("port") for i in inbounds if isinstance(i, dict)} if isinstance(inbounds, list) else set()
        if port not in current and not self.allocator.is_available(port):
            raise PortUnavailable(f"port {port} is already in use", port=port, tag=tag)

    def _info(self, meta: FragmentMeta, inbound: Mapping[str, Any]) -> ProtocolInfo:
        descriptor = self.catalog.identify(inbound)
        port = inbound.get("port")
        kind = inbound.get("protocol")
        complete = isinstance(port, int) and not isinstance(port, bool) and bool(kind)
        return ProtocolInfo(
            tag=str(inbound.get("tag") or meta.name),
            type=str(kind or ""),
            port=port if complete else 0,
            config_file=meta.filename,
            status="configured" if complete else "incomplete",
            protocol=descriptor.name if descriptor else "",
            settings=dict(inbound),
            summary=summarize_inbound(inbound),
        )

    def _parameters(self, descriptor: ProtocolDescriptor, tag: str, opts: Mapping[str, Any]) -> TemplateParameters:
        """Merge explicit options, descriptor defaults, and generated secrets."""

        port = self.allocator.suggest(
            port_family_for(descriptor), opts.get("port") or 0, default=descriptor.default_port
        )
        host = _text(opts, "host") or _text(opts, "domain")
        family = descriptor.family
        if family == REALITY:
            dest = _text(opts, "dest") or DEFAULT_REALITY_DEST
            return RealityParameters(
                tag=tag,
                port=port,
                uuid=_text(opts, "uuid") or self.secrets.uuid(),
                dest=dest,
                server_name=_text(opts, "server_name") or dest.split(":")[0],
                private_key=_text(opts, "private_key") or self.secrets.x25519_keypair()[0],
                short_id=_text(opts, "short_id") or self.secrets.short_id(8),
            )
        if family == WEBSOCKET:
            by_password = descriptor.credential == "password"
            return WebSocketParameters(
                tag=tag,
                port=port,
                path=_text(opts, "path") or DEFAULT_WS_PATH,
                host=host,
                uuid="" if by_password else _text(opts, "uuid") or self.secrets.uuid(),
                password=(_text(opts, "password") or self.secrets.password()) if by_password else "",
                security="tls" if descriptor.requires_tls else "none",
                cert_file=_text(opts, "cert_file"),
                key_file=_text(opts, "key_file"),
            )
        if family == HTTPUPGRADE:
            return HttpUpgradeParameters(
                tag=tag,
                port=port,
                uuid=_text(opts, "uuid") or self.secrets.uuid(),
                path=_text(opts, "path") or DEFAULT_HTTPUPGRADE_PATH,
                host=host,
            )
        if family == SHADOWSOCKS:
            return ShadowsocksParameters(
                tag=tag,
                port=port,
                method=_text(opts, "method") or DEFAULT_SS_METHOD,
                password=_text(opts, "password") or self.secrets.password(),
            )
        if family == SHADOWSOCKS_2022:
            method = _text(opts, "method") or DEFAULT_SS2022_METHOD
            return ShadowsocksParameters(
                tag=tag,
                port=port,
                method=method,
                password=_text(opts, "password") or self.secrets.ss2022_key(method),
            )
        raise ProtocolNotSupported(f"no parameter set for {descriptor.name}", protocol=descriptor.name)


def _text(opts: Mapping[str, Any], key: str) -> str:
    value = opts.get(key)
    return "" if value is None else str(value)


def _normalized(options: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map camelCase option aliases onto their snake_case keys and validate them.

    Examples
    --------
    >>> _normalized({"serverName": "example.com", "port": 8443})
    {'server_name': 'example.com', 'port': 8443}
    """

    return validate_options({_OPTION_ALIASES.get(key, key): value for key, value in (options or {}).items()})
