"""Certificate store: SQLite persistence for accounts, domains, certificates and jobs.

Every public method opens its own short-lived connection, so a single
``CertificateStore`` may be shared by the request path and the worker pool.
Multi-row invariants are enforced inside ``BEGIN IMMEDIATE`` transactions
and by the schema itself (one pending certificate per domain, one account).
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cert_engine.errors import IssuanceConflictError
from cert_engine.models import (
    AcmeAccount,
    CertificateHealth,
    CertificateStatus,
    ChallengeType,
    CompletionJob,
    Domain,
    DomainCertificate,
    IssuedCertificate,
    JobKind,
    JobStatus,
    SslMode,
)

logger = logging.getLogger(__name__)

ACCOUNT_ID = "global"

_PENDING_SQL = "('PENDING_HTTP01', 'PENDING_DNS01')"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS acme_account (
    id TEXT PRIMARY KEY,
    account_key_pem TEXT NOT NULL,
    account_url TEXT NOT NULL,
    email TEXT NOT NULL,
    created_at timestamp NOT NULL
);

CREATE TABLE IF NOT EXISTS domains (
    id TEXT PRIMARY KEY,
    hostname TEXT NOT NULL UNIQUE,
    verified INTEGER NOT NULL DEFAULT 0,
    ssl_mode TEXT NOT NULL DEFAULT 'NONE'
);

CREATE TABLE IF NOT EXISTS domain_certificates (
    id TEXT PRIMARY KEY,
    domain_id TEXT NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    challenge_type TEXT NOT NULL,
    private_key_pem TEXT NOT NULL,
    csr_pem TEXT NOT NULL,
    acme_order_url TEXT,
    challenge_token TEXT,
    challenge_key_auth TEXT,
    dns_txt_value TEXT,
    certificate_pem TEXT,
    full_chain_pem TEXT,
    issued_at timestamp,
    expires_at timestamp,
    last_error TEXT,
    renewal_attempts INTEGER NOT NULL DEFAULT 0,
    created_at timestamp NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_domain_certificates_status_expiry
    ON domain_certificates(status, expires_at);

CREATE UNIQUE INDEX IF NOT EXISTS uq_domain_certificates_one_pending
    ON domain_certificates(domain_id) WHERE status IN {_PENDING_SQL};

CREATE TABLE IF NOT EXISTS completion_jobs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    cert_id TEXT NOT NULL REFERENCES domain_certificates(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_run_at timestamp NOT NULL,
    lease_until timestamp,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS ix_completion_jobs_due
    ON completion_jobs(status, next_run_at);

CREATE TABLE IF NOT EXISTS issuance_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    registered_domain TEXT NOT NULL,
    occurred_at timestamp NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_issuance_events_domain
    ON issuance_events(registered_domain, occurred_at);
"""


# Fixed-width UTC text keeps SQL comparisons on timestamp columns chronological.
def _adapt_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        raise ValueError("Naive datetime not allowed in SQLite")
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _convert_datetime(value: bytes) -> datetime:
    text = value.decode("utf-8")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text).astimezone(UTC)


# NOTE: sqlite3 adapter/converter registration is process-global.
sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("timestamp", _convert_datetime)


def _new_id() -> str:
    return uuid.uuid4().hex


def _row_to_domain(row: sqlite3.Row) -> Domain:
    return Domain(
        id=row["id"],
        hostname=row["hostname"],
        verified=bool(row["verified"]),
        ssl_mode=SslMode(row["ssl_mode"]),
    )


def _row_to_certificate(row: sqlite3.Row) -> DomainCertificate:
    return DomainCertificate(
        id=row["id"],
        domain_id=row["domain_id"],
        status=CertificateStatus(row["status"]),
        challenge_type=ChallengeType(row["challenge_type"]),
        private_key_pem=row["private_key_pem"],
        csr_pem=row["csr_pem"],
        acme_order_url=row["acme_order_url"],
        challenge_token=row["challenge_token"],
        challenge_key_auth=row["challenge_key_auth"],
        dns_txt_value=row["dns_txt_value"],
        certificate_pem=row["certificate_pem"],
        full_chain_pem=row["full_chain_pem"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        last_error=row["last_error"],
        renewal_attempts=row["renewal_attempts"],
        created_at=row["created_at"],
    )


def _row_to_job(row: sqlite3.Row) -> CompletionJob:
    return CompletionJob(
        id=row["id"],
        kind=JobKind(row["kind"]),
        cert_id=row["cert_id"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        next_run_at=row["next_run_at"],
        lease_until=row["lease_until"],
        last_error=row["last_error"],
    )


class CertificateStore:
    """SQLite-backed persistence for the certificate lifecycle."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self._db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            isolation_level=None,
            check_same_thread=False,
            timeout=30.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction that commits or rolls back on error."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.commit()
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create tables and indexes. Safe to call on every start."""
        conn = self._connect()
        try:
            current_mode = conn.execute("PRAGMA journal_mode").fetchone()[0].upper()
            if current_mode != "WAL":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()
        logger.debug("Initialized certificate store at %s", self._db_path)

    # --- ACME account ---

    def get_account(self) -> AcmeAccount | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM acme_account WHERE id = ?", (ACCOUNT_ID,)).fetchone()
        if row is None:
            return None
        return AcmeAccount(
            account_key_pem=row["account_key_pem"],
            account_url=row["account_url"],
            email=row["email"],
            created_at=row["created_at"],
        )

    def create_account_if_absent(self, account: AcmeAccount) -> AcmeAccount:
        """Insert the singleton account unless one exists. Returns the stored account (first writer wins)."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO acme_account (id, account_key_pem, account_url, email, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (ACCOUNT_ID, account.account_key_pem, account.account_url, account.email, datetime.now(UTC)),
            )
            if cursor.rowcount == 0:
                logger.warning("ACME account already persisted by another writer; keeping stored account")
        stored = self.get_account()
        if stored is None:
            raise RuntimeError("ACME account insert was not visible after commit")
        return stored

    # --- Domains ---

    def add_domain(self, hostname: str, verified: bool = False) -> Domain:
        domain = Domain(id=_new_id(), hostname=hostname.lower(), verified=verified)
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO domains (id, hostname, verified, ssl_mode) VALUES (?, ?, ?, ?)",
                (domain.id, domain.hostname, int(domain.verified), str(domain.ssl_mode)),
            )
        return domain

    def get_domain(self, domain_id: str) -> Domain | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM domains WHERE id = ?", (domain_id,)).fetchone()
        return _row_to_domain(row) if row else None

    def get_domain_by_hostname(self, hostname: str) -> Domain | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM domains WHERE hostname = ?", (hostname.lower(),)).fetchone()
        return _row_to_domain(row) if row else None

    # --- Certificates ---

    def create_certificate(
        self,
        *,
        domain_id: str,
        challenge_type: ChallengeType,
        private_key_pem: str,
        csr_pem: str,
        acme_order_url: str | None,
        challenge_token: str | None = None,
        challenge_key_auth: str | None = None,
        dns_txt_value: str | None = None,
        job_kind: JobKind | None = None,
    ) -> DomainCertificate:
        """Persist a new pending certificate, optionally enqueueing its completion job atomically.

        Raises:
            IssuanceConflictError: The domain already has a pending certificate.
        """
        now = datetime.now(UTC)
        cert = DomainCertificate(
            id=_new_id(),
            domain_id=domain_id,
            status=challenge_type.pending_status,
            challenge_type=challenge_type,
            private_key_pem=private_key_pem,
            csr_pem=csr_pem,
            acme_order_url=acme_order_url,
            challenge_token=challenge_token,
            challenge_key_auth=challenge_key_auth,
            dns_txt_value=dns_txt_value,
            created_at=now,
        )
        try:
            with self._transaction(immediate=True) as conn:
                conn.execute(
                    "INSERT INTO domain_certificates (id, domain_id, status, challenge_type, private_key_pem, "
                    "csr_pem, acme_order_url, challenge_token, challenge_key_auth, dns_txt_value, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        cert.id,
                        cert.domain_id,
                        str(cert.status),
                        str(cert.challenge_type),
                        cert.private_key_pem,
                        cert.csr_pem,
                        cert.acme_order_url,
                        cert.challenge_token,
                        cert.challenge_key_auth,
                        cert.dns_txt_value,
                        now,
                    ),
                )
                if job_kind is not None:
                    conn.execute(
                        "INSERT INTO completion_jobs (id, kind, cert_id, status, attempts, next_run_at) "
                        "VALUES (?, ?, ?, ?, 0, ?)",
                        (_new_id(), str(job_kind), cert.id, str(JobStatus.PENDING), now),
                    )
        except sqlite3.IntegrityError as e:
            if "uq_domain_certificates_one_pending" in str(e) or "domain_certificates.domain_id" in str(e):
                raise IssuanceConflictError(f"Certificate issuance already in progress for domain {domain_id}") from e
            raise
        return cert

    def get_certificate(self, cert_id: str) -> DomainCertificate | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM domain_certificates WHERE id = ?", (cert_id,)).fetchone()
        return _row_to_certificate(row) if row else None

    def find_pending_http01(self, hostname: str, token: str) -> DomainCertificate | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT c.* FROM domain_certificates c JOIN domains d ON d.id = c.domain_id "
                "WHERE d.hostname = ? AND c.challenge_token = ? AND c.status = ?",
                (hostname.lower(), token, str(CertificateStatus.PENDING_HTTP01)),
            ).fetchone()
        return _row_to_certificate(row) if row else None

    def latest_issued(self, domain_id: str) -> DomainCertificate | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM domain_certificates WHERE domain_id = ? AND status = ? "
                "AND certificate_pem IS NOT NULL ORDER BY issued_at DESC LIMIT 1",
                (domain_id, str(CertificateStatus.ISSUED)),
            ).fetchone()
        return _row_to_certificate(row) if row else None

    def has_pending(self, domain_id: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT 1 FROM domain_certificates WHERE domain_id = ? AND status IN {_PENDING_SQL} LIMIT 1",
                (domain_id,),
            ).fetchone()
        return row is not None

    def mark_issued(self, cert_id: str, issued: IssuedCertificate) -> bool:
        """Move a pending certificate to ISSUED and flip its domain to CA-issued.

        Returns False (and writes nothing) when the record is no longer pending.
        """
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE domain_certificates SET status = ?, certificate_pem = ?, full_chain_pem = ?, "
                "issued_at = ?, expires_at = ?, acme_order_url = NULL, challenge_token = NULL, "
                "challenge_key_auth = NULL, dns_txt_value = NULL, last_error = NULL "
                f"WHERE id = ? AND status IN {_PENDING_SQL}",
                (
                    str(CertificateStatus.ISSUED),
                    issued.certificate_pem,
                    issued.full_chain_pem,
                    issued.issued_at,
                    issued.expires_at,
                    cert_id,
                ),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "UPDATE domains SET ssl_mode = ? WHERE id = (SELECT domain_id FROM domain_certificates WHERE id = ?)",
                (str(SslMode.CA_ISSUED), cert_id),
            )
        return True

    def mark_failed(self, cert_id: str, error: str, *, count_attempt: bool = True) -> bool:
        """Move a pending certificate to FAILED. Returns False when it is no longer pending."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE domain_certificates SET status = ?, last_error = ?, "
                "renewal_attempts = renewal_attempts + ?, challenge_token = NULL, "
                "challenge_key_auth = NULL, dns_txt_value = NULL, acme_order_url = NULL "
                f"WHERE id = ? AND status IN {_PENDING_SQL}",
                (str(CertificateStatus.FAILED), error, 1 if count_attempt else 0, cert_id),
            )
        return cursor.rowcount == 1

    def mark_revoked(self, cert_id: str, reason: str) -> bool:
        """Move an ISSUED certificate to REVOKED. Returns False when it is no longer ISSUED."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE domain_certificates SET status = ?, last_error = ? WHERE id = ? AND status = ?",
                (str(CertificateStatus.REVOKED), reason, cert_id, str(CertificateStatus.ISSUED)),
            )
        return cursor.rowcount == 1

    def record_error(self, cert_id: str, error: str, *, count_attempt: bool = True) -> None:
        """Set ``last_error`` without changing state (renewal bookkeeping)."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE domain_certificates SET last_error = ?, renewal_attempts = renewal_attempts + ? "
                "WHERE id = ?",
                (error, 1 if count_attempt else 0, cert_id),
            )

    def find_renewal_candidates(self, threshold: datetime, limit: int) -> list[tuple[DomainCertificate, Domain]]:
        """ISSUED certificates expiring at or before ``threshold``, soonest first.

        A certificate superseded by a newer ISSUED certificate for the same
        domain is not a candidate.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT c.*, d.hostname AS d_hostname, d.verified AS d_verified, d.ssl_mode AS d_ssl_mode "
                "FROM domain_certificates c JOIN domains d ON d.id = c.domain_id "
                "WHERE c.status = ? AND c.expires_at IS NOT NULL AND c.expires_at <= ? "
                "AND NOT EXISTS (SELECT 1 FROM domain_certificates n WHERE n.domain_id = c.domain_id "
                "AND n.status = ? AND n.issued_at > c.issued_at) "
                "ORDER BY c.expires_at ASC LIMIT ?",
                (str(CertificateStatus.ISSUED), threshold, str(CertificateStatus.ISSUED), limit),
            ).fetchall()
        return [
            (
                _row_to_certificate(row),
                Domain(
                    id=row["domain_id"],
                    hostname=row["d_hostname"],
                    verified=bool(row["d_verified"]),
                    ssl_mode=SslMode(row["d_ssl_mode"]),
                ),
            )
            for row in rows
        ]

    def health_counts(self, now: datetime, threshold: datetime) -> CertificateHealth:
        """Counts by state. ISSUED certificates past ``now`` are reported as expired."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT "
                "COUNT(*) AS total, "
                "SUM(CASE WHEN status = 'ISSUED' AND (expires_at IS NULL OR expires_at > :now) "
                "THEN 1 ELSE 0 END) AS issued, "
                "SUM(CASE WHEN status = 'ISSUED' AND expires_at > :now AND expires_at <= :threshold "
                "THEN 1 ELSE 0 END) AS expiring_soon, "
                "SUM(CASE WHEN status = 'EXPIRED' OR (status = 'ISSUED' AND expires_at <= :now) "
                "THEN 1 ELSE 0 END) AS expired, "
                f"SUM(CASE WHEN status IN {_PENDING_SQL} THEN 1 ELSE 0 END) AS pending, "
                "SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed "
                "FROM domain_certificates",
                {"now": now, "threshold": threshold},
            ).fetchone()
        return CertificateHealth(
            total=row["total"] or 0,
            issued=row["issued"] or 0,
            expiring_soon=row["expiring_soon"] or 0,
            expired=row["expired"] or 0,
            pending=row["pending"] or 0,
            failed=row["failed"] or 0,
        )

    # --- Completion jobs ---

    def claim_due_jobs(self, now: datetime, limit: int, lease_seconds: int) -> list[CompletionJob]:
        """Lease due jobs, including RUNNING jobs whose lease expired (orphaned by a crash)."""
        lease_until = now + timedelta(seconds=lease_seconds)
        with self._transaction(immediate=True) as conn:
            rows = conn.execute(
                "SELECT id FROM completion_jobs WHERE (status = ? AND next_run_at <= ?) "
                "OR (status = ? AND lease_until <= ?) ORDER BY next_run_at ASC LIMIT ?",
                (str(JobStatus.PENDING), now, str(JobStatus.RUNNING), now, limit),
            ).fetchall()
            ids = [row["id"] for row in rows]
            for job_id in ids:
                conn.execute(
                    "UPDATE completion_jobs SET status = ?, lease_until = ?, attempts = attempts + 1 WHERE id = ?",
                    (str(JobStatus.RUNNING), lease_until, job_id),
                )
            claimed = [
                _row_to_job(conn.execute("SELECT * FROM completion_jobs WHERE id = ?", (job_id,)).fetchone())
                for job_id in ids
            ]
        return claimed

    def complete_job(self, job_id: str) -> None:
        self._finish_job(job_id, JobStatus.DONE, None)

    def fail_job(self, job_id: str, error: str) -> None:
        self._finish_job(job_id, JobStatus.FAILED, error)

    def _finish_job(self, job_id: str, status: JobStatus, error: str | None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE completion_jobs SET status = ?, lease_until = NULL, last_error = ? WHERE id = ?",
                (str(status), error, job_id),
            )

    def retry_job(self, job_id: str, next_run_at: datetime, error: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE completion_jobs SET status = ?, next_run_at = ?, lease_until = NULL, last_error = ? "
                "WHERE id = ?",
                (str(JobStatus.PENDING), next_run_at, error, job_id),
            )

    def jobs_for_certificate(self, cert_id: str) -> list[CompletionJob]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM completion_jobs WHERE cert_id = ? ORDER BY next_run_at", (cert_id,)
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    # --- Rate limiting ---

    def record_issuance_if_below(self, registered_domain: str, now: datetime, window: timedelta, limit: int) -> int:
        """Atomically count issuances inside the window and record one more if below ``limit``.

        Returns the count observed before recording. The caller compares it
        against ``limit`` to decide whether the issuance was recorded.
        """
        window_start = now - window
        with self._transaction(immediate=True) as conn:
            conn.execute(
                "DELETE FROM issuance_events WHERE registered_domain = ? AND occurred_at <= ?",
                (registered_domain, window_start),
            )
            count = conn.execute(
                "SELECT COUNT(*) FROM issuance_events WHERE registered_domain = ?",
                (registered_domain,),
            ).fetchone()[0]
            if count < limit:
                conn.execute(
                    "INSERT INTO issuance_events (registered_domain, occurred_at) VALUES (?, ?)",
                    (registered_domain, now),
                )
        return count
