"""
CLI context for WP Bridge.

This module provides the context object passed to all CLI commands. It
builds the engine's collaborators lazily from configuration and hands them
over as explicit handles.
"""

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError
from sqlalchemy.engine import Engine

from wp_migration.client.exceptions import ConfigError
from wp_migration.client.source_client import CancellationToken, RemoteSource
from wp_migration.client.transport import Downloader
from wp_migration.client.vault import CredentialStore, CredentialVault
from wp_migration.config import CredentialRecord, MigrationConfig, load_config_from_yaml
from wp_migration.migration.attachments import AttachmentResolver
from wp_migration.migration.database import create_database_engine, init_database
from wp_migration.migration.importer import EntryImporter
from wp_migration.migration.query import RemoteQueryBuilder
from wp_migration.migration.state import IdentityMapper, RunCounter
from wp_migration.migration.store import SqlContentStore
from wp_migration.migration.terms import TermImporter
from wp_migration.migration.users import UserImporter
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    Attributes:
        config_path: Path to configuration file (environment only when None)
        log_level: Console logging level
        log_file: Optional log file path
        cancel: Cancellation token shared by every operation of the command
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None
    cancel: CancellationToken = field(default_factory=CancellationToken)

    # Lazy-loaded attributes
    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _store: SqlContentStore | None = field(default=None, init=False, repr=False)
    _engine: Engine | None = field(default=None, init=False, repr=False)
    _source: RemoteSource | None = field(default=None, init=False, repr=False)
    _mapper: IdentityMapper | None = field(default=None, init=False, repr=False)
    _downloader: Downloader | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load configuration (YAML file plus environment)."""
        if self._config is None:
            try:
                if self.config_path is None:
                    logger.debug("config_from_environment")
                    self._config = MigrationConfig()
                else:
                    logger.debug("config_loading", config_path=str(self.config_path))
                    self._config = load_config_from_yaml(self.config_path)
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}") from e
        return self._config

    @property
    def store(self) -> SqlContentStore:
        """Local content store, schema created on first use."""
        if self._store is None:
            self._engine = create_database_engine(self.config.target.database_url)
            self._store = SqlContentStore(init_database(self._engine))
        return self._store

    @property
    def engine(self) -> Engine:
        """Engine of the local store."""
        _ = self.store
        return self._engine

    @property
    def credentials(self) -> CredentialStore:
        """Credential store backed by the local options table."""
        vault = CredentialVault(self.config.vault.load_key_bytes(), self.config.vault.context)
        return CredentialStore(self.store, vault)

    def source_record(self) -> CredentialRecord:
        """Source credentials: the config's ``source`` section, else the vault.

        Raises:
            ConfigError: If no credentials are configured or stored
        """
        if self.config.source is not None:
            return self.config.source

        record = self.credentials.load()
        if record is None:
            raise ConfigError(
                "No source credentials. Run 'wp-bridge credentials set' or add a source section."
            )
        return record

    @property
    def source(self) -> RemoteSource:
        if self._source is None:
            perf = self.config.performance
            self._source = RemoteSource.from_credentials(
                self.source_record(),
                connect_timeout=perf.connect_timeout,
                read_timeout=perf.read_timeout,
                cancel=self.cancel,
            )
        return self._source

    @property
    def query(self) -> RemoteQueryBuilder:
        return RemoteQueryBuilder(self.source)

    @property
    def mapper(self) -> IdentityMapper:
        if self._mapper is None:
            self._mapper = IdentityMapper(self.store)
        return self._mapper

    @property
    def downloader(self) -> Downloader:
        if self._downloader is None:
            perf = self.config.performance
            self._downloader = Downloader(
                connect_timeout=perf.connect_timeout,
                transfer_timeout=perf.download_timeout,
                max_attempts=perf.download_retries,
                cancel=self.cancel,
            )
        return self._downloader

    def user_importer(self) -> UserImporter:
        return UserImporter(
            self.query, self.store, self.mapper, skip_logins=self.config.target.skip_logins
        )

    def term_importer(self) -> TermImporter:
        return TermImporter(self.query, self.store, self.mapper, self.config.target)

    def attachment_resolver(self, old_base: str = "", download: bool = True) -> AttachmentResolver:
        return AttachmentResolver(
            self.query,
            self.store,
            self.mapper,
            self.config.target,
            old_base=old_base or self.source.media_base_url,
            downloader=self.downloader if download else None,
            cancel=self.cancel,
        )

    def entry_importer(self, old_base: str = "", download: bool = True) -> EntryImporter:
        return EntryImporter(
            self.query,
            self.store,
            self.mapper,
            self.config.target,
            RunCounter(self.store),
            users=self.user_importer(),
            attachments=self.attachment_resolver(old_base, download),
            chunk_size=self.config.performance.chunk_size,
            old_media_base_url=old_base or self.source.media_base_url,
        )

    def run_counter(self) -> RunCounter:
        return RunCounter(self.store)

    def cleanup(self) -> None:
        """Release engines and HTTP clients."""
        if self._downloader is not None:
            self._downloader.close()
        if self._source is not None:
            self._source.dispose()
        if self._engine is not None:
            self._engine.dispose()
        logger.debug("context_cleanup_complete")

    def __enter__(self) -> "MigrationContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
