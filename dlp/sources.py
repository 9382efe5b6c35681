"""
Data Source Producers for DLP

Producers enumerate the units of a data source (files, messages, tables)
and hand their text to the scan engine together with a data context.
"""
import email
import fnmatch
import logging
import mailbox
import os
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy as email_policy
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import MetaData, Table, create_engine, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from .core import DataContext, ScanRequest, SourceKind
from .errors import SourceProducerError

logger = logging.getLogger('dlp.sources')

ARCHIVE_EXTENSIONS = ('.zip', '.tar', '.gz', '.tgz', '.bz2', '.7z', '.rar')
GLOB_CHARS = set('*?[')


@dataclass
class ScanUnit:
    """One piece of content to classify, with where it came from."""
    text: str
    context: DataContext
    size_hint: Optional[int] = None


def _normalize_glob(pattern: str) -> str:
    """Turn bare extensions like ``txt`` or ``.txt`` into ``*.txt``."""
    pattern = pattern.strip()
    if GLOB_CHARS & set(pattern) or '/' in pattern or os.sep in pattern:
        return pattern
    return '*.' + pattern.lstrip('.')


class SourceProducer(ABC):
    """Base class for all source producers.

    ``nominal_total`` is the default number of units a single scan takes
    from the source; pass ``limit`` to change it.
    """

    source_kind: Optional[str] = None
    nominal_total = 100

    def __init__(self, limit: Optional[int] = None, **kwargs):
        self.limit = limit if limit is not None else self.nominal_total
        self.config = kwargs

    @abstractmethod
    def iter_units(self, request: ScanRequest) -> Iterator[ScanUnit]:
        """Yield scan units for the request, at most ``self.limit`` of them."""
        raise NotImplementedError

    def source_for(self, request: ScanRequest) -> str:
        return self.source_kind or request.source

    def target_for(self, request: ScanRequest) -> Path:
        """The request's target as a path; an empty target is an error, never ``.``."""
        if not request.target_path or not request.target_path.strip():
            raise SourceProducerError(f"No target path given for {request.source} scan {request.scan_id}")
        return Path(request.target_path).expanduser()

    def is_allowed(self, name: str, request: ScanRequest) -> bool:
        """Apply the request's allow globs (``file_types``) and deny globs (``exclusions``)."""
        candidates = {name, os.path.basename(name)}
        for pattern in request.exclusions:
            glob = pattern.strip()
            if any(fnmatch.fnmatch(c, glob) for c in candidates):
                return False
        if not request.file_types:
            return True
        return any(
            fnmatch.fnmatch(os.path.basename(name).lower(), _normalize_glob(p).lower())
            for p in request.file_types
        )


def _read_text(data: bytes) -> Optional[str]:
    # Treat anything with NUL bytes near the start as binary
    if b'\x00' in data[:1024]:
        return None
    return data.decode('utf-8', errors='ignore')


class FileSystemProducer(SourceProducer):
    """Reads text files under a directory tree."""

    source_kind = SourceKind.FILE_SYSTEM.value
    nominal_total = 1000

    def iter_units(self, request: ScanRequest) -> Iterator[ScanUnit]:
        root = self.target_for(request)
        if not root.exists():
            raise SourceProducerError(f"Target path does not exist: {root}")

        emitted = 0
        for path in self._walk(root, request):
            for unit in self._units_for_file(path, request):
                if emitted >= self.limit:
                    logger.debug(f"Unit limit {self.limit} reached for {root}")
                    return
                emitted += 1
                yield unit

    def _walk(self, root: Path, request: ScanRequest) -> Iterator[Path]:
        if root.is_file():
            yield root
            return
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._walk_error):
            dirnames[:] = sorted(
                d for d in dirnames
                if not any(fnmatch.fnmatch(d, p.strip()) for p in request.exclusions)
            )
            for filename in sorted(filenames):
                yield Path(dirpath) / filename

    @staticmethod
    def _walk_error(error: OSError) -> None:
        raise SourceProducerError(f"Cannot read directory {error.filename}: {error.strerror}")

    def _units_for_file(self, path: Path, request: ScanRequest) -> Iterator[ScanUnit]:
        is_archive = path.suffix.lower() in ARCHIVE_EXTENSIONS
        if is_archive and not request.include_archives:
            logger.debug(f"Skipping archive: {path}")
            return
        if not is_archive and not self.is_allowed(str(path), request):
            return

        try:
            stat = path.stat()
        except OSError as e:
            logger.warning(f"Cannot stat {path}: {e}")
            return
        if stat.st_size > request.max_file_size:
            logger.debug(f"Skipping large file: {path} ({stat.st_size} bytes)")
            return

        if is_archive:
            yield from self._archive_units(path, request)
            return

        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot read {path}: {e}")
            return
        text = _read_text(data)
        if text is None:
            logger.debug(f"Skipping binary file: {path}")
            return

        yield ScanUnit(
            text=text,
            context=self._context(request, path.parent, path.name, {
                'file_size': stat.st_size,
                'path': str(path),
                'last_modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            }),
            size_hint=stat.st_size,
        )

    def _archive_units(self, path: Path, request: ScanRequest) -> Iterator[ScanUnit]:
        # Only plain zip archives are opened; encrypted members are skipped
        if not zipfile.is_zipfile(path):
            logger.debug(f"Unsupported archive format: {path}")
            return
        try:
            with zipfile.ZipFile(path) as archive:
                for info in archive.infolist():
                    if info.is_dir() or info.flag_bits & 0x1:
                        continue
                    if not self.is_allowed(info.filename, request):
                        continue
                    if info.file_size > request.max_file_size:
                        continue
                    text = _read_text(archive.read(info))
                    if text is None:
                        continue
                    yield ScanUnit(
                        text=text,
                        context=self._context(request, path, os.path.basename(info.filename), {
                            'file_size': info.file_size,
                            'path': f"{path}!{info.filename}",
                            'archive': str(path),
                        }),
                        size_hint=info.file_size,
                    )
        except (zipfile.BadZipFile, OSError) as e:
            logger.warning(f"Cannot read archive {path}: {e}")

    def _context(self, request: ScanRequest, location: Path, file_name: str,
                 metadata: Dict[str, Any]) -> DataContext:
        suffix = Path(file_name).suffix.lstrip('.').lower()
        return DataContext(
            source=self.source_for(request),
            location=str(location),
            file_name=file_name,
            file_type=suffix or None,
            metadata=metadata,
        )


class GenericProducer(FileSystemProducer):
    """Reads text files for source kinds without a dedicated producer.

    Units carry the request's own source kind (``network``, ``endpoint``, ...).
    """

    source_kind = None
    nominal_total = 100


class EmailProducer(SourceProducer):
    """Reads messages from an mbox file, a Maildir, or ``.eml`` files."""

    source_kind = SourceKind.EMAIL.value
    nominal_total = 50

    def iter_units(self, request: ScanRequest) -> Iterator[ScanUnit]:
        target = self.target_for(request)
        if not target.exists():
            raise SourceProducerError(f"Mailbox does not exist: {target}")

        emitted = 0
        for message in self._messages(target):
            if emitted >= self.limit:
                return
            unit = self._unit_for_message(message, target, request)
            if unit is None:
                continue
            emitted += 1
            yield unit

    def _messages(self, target: Path) -> Iterator[EmailMessage]:
        def factory(f):
            return email.message_from_binary_file(f, policy=email_policy.default)

        try:
            if target.is_dir() and (target / 'cur').is_dir():
                box = mailbox.Maildir(str(target), factory=factory, create=False)
                for key in sorted(box.keys()):
                    yield box[key]
            elif target.is_dir():
                for path in sorted(target.glob('*.eml')):
                    with open(path, 'rb') as f:
                        yield email.message_from_binary_file(f, policy=email_policy.default)
            elif target.suffix.lower() == '.eml':
                with open(target, 'rb') as f:
                    yield email.message_from_binary_file(f, policy=email_policy.default)
            else:
                box = mailbox.mbox(str(target), factory=factory, create=False)
                try:
                    for message in box:
                        yield message
                finally:
                    box.close()
        except (OSError, mailbox.Error) as e:
            raise SourceProducerError(f"Cannot read mailbox {target}: {e}") from e

    def _unit_for_message(self, message: EmailMessage, target: Path,
                          request: ScanRequest) -> Optional[ScanUnit]:
        parts: List[str] = []
        subject = str(message.get('Subject', '') or '')
        if subject:
            parts.append(subject)

        attachments = 0
        for part in message.walk():
            if part.is_multipart():
                continue
            if part.get_content_maintype() != 'text':
                if part.get_filename():
                    attachments += 1
                continue
            filename = part.get_filename()
            if filename:
                attachments += 1
                if not self.is_allowed(filename, request):
                    continue
            try:
                parts.append(part.get_content())
            except (LookupError, UnicodeDecodeError) as e:
                logger.debug(f"Cannot decode message part: {e}")

        text = '\n'.join(parts)
        size = len(text.encode('utf-8'))
        if size > request.max_file_size:
            logger.debug(f"Skipping large message {message.get('Message-ID')}")
            return None

        return ScanUnit(
            text=text,
            context=DataContext(
                source=self.source_for(request),
                location=str(target),
                sender=str(message.get('From', '') or '') or None,
                recipient=str(message.get('To', '') or '') or None,
                metadata={
                    'message_id': str(message.get('Message-ID', '') or ''),
                    'subject': subject,
                    'attachments': attachments,
                },
            ),
            size_hint=size,
        )


class DatabaseProducer(SourceProducer):
    """Samples rows from every table of a database, one unit per table.

    ``target_path`` is a SQLAlchemy database URL; a bare file path is opened
    as a read-only SQLite database. ``tables`` limits the scan to the named
    tables and ``exclude_tables`` skips tables, as do the request's
    ``exclusions`` globs.
    """

    source_kind = SourceKind.DATABASE.value
    nominal_total = 10

    def __init__(self, limit: Optional[int] = None, sample_size: int = 1000, **kwargs):
        super().__init__(limit=limit, **kwargs)
        self.sample_size = sample_size
        self.tables_to_scan = self.config.get('tables', [])
        self.exclude_tables = self.config.get('exclude_tables', [])

    def _database_url(self, request: ScanRequest) -> str:
        target = self.target_for(request)
        if '://' in request.target_path:
            return request.target_path
        if not target.is_file():
            raise SourceProducerError(f"Database file does not exist: {target}")
        return f"sqlite:///file:{target}?mode=ro&uri=true"

    def iter_units(self, request: ScanRequest) -> Iterator[ScanUnit]:
        url = self._database_url(request)
        try:
            db_engine = create_engine(url)
        except (SQLAlchemyError, ImportError) as e:
            raise SourceProducerError(f"Cannot open database {request.target_path}: {e}") from e

        try:
            with db_engine.connect() as conn:
                metadata = MetaData()
                metadata.reflect(bind=conn)
                database = Path(db_engine.url.database or 'database').stem

                emitted = 0
                for table_name, table in sorted(metadata.tables.items()):
                    if emitted >= self.limit:
                        return
                    if not self._should_scan_table(table_name, request):
                        continue
                    emitted += 1
                    yield self._unit_for_table(conn, database, table, request)
        except SQLAlchemyError as e:
            raise SourceProducerError(f"Error scanning database {db_engine.url.database}: {e}") from e
        finally:
            db_engine.dispose()

    def _should_scan_table(self, table_name: str, request: ScanRequest) -> bool:
        if self.tables_to_scan and table_name not in self.tables_to_scan:
            return False
        if table_name in self.exclude_tables:
            return False
        return not any(fnmatch.fnmatch(table_name, p.strip()) for p in request.exclusions)

    def _unit_for_table(self, conn: Connection, database: str, table: Table,
                        request: ScanRequest) -> ScanUnit:
        rows = conn.execute(select(table).limit(self.sample_size))
        lines = [
            ' | '.join('' if value is None else str(value) for value in row)
            for row in rows
        ]
        text = '\n'.join(lines)

        return ScanUnit(
            text=text,
            context=DataContext(
                source=self.source_for(request),
                location=f"{database}.{table.name}",
                metadata={
                    'table': table.name,
                    'columns': [column.name for column in table.columns],
                    'row_count': len(lines),
                },
            ),
            size_hint=len(text.encode('utf-8')),
        )


PRODUCERS = {
    SourceKind.EMAIL.value: EmailProducer,
    SourceKind.FILE_SYSTEM.value: FileSystemProducer,
    SourceKind.DATABASE.value: DatabaseProducer,
}


def create_producer(source: str, limit: Optional[int] = None, **kwargs) -> SourceProducer:
    """Create the producer for a source kind; unknown kinds get the generic producer."""
    producer_class = PRODUCERS.get(source, GenericProducer)
    return producer_class(limit=limit, **kwargs)
