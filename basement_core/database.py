"""
Basement Database Layer
=======================

Async PostgreSQL connection pool and query helpers using asyncpg.
Handles schema migrations on startup.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Any, List, Dict, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Columns the engine is allowed to change after insert
INSTANCE_UPDATABLE = {"status", "provider_instance_id", "ip_address"}


async def init_database(database_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """
    Initialize the database connection pool and run migrations.

    Args:
        database_url: PostgreSQL connection string
        min_size: Minimum pool connections
        max_size: Maximum pool connections

    Returns:
        asyncpg connection pool
    """
    logger.info("Initializing database connection pool...")
    pool = await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
    )

    await run_migrations(pool)

    logger.info("Database initialized successfully")
    return pool


async def run_migrations(pool: asyncpg.Pool):
    """
    Run pending SQL migrations in order.

    Migrations are SQL files in basement_core/migrations/ named NNN_description.sql.
    Applied migrations are tracked in the schema_migrations table.
    """
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version VARCHAR(10) PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
        applied = {row["version"] for row in rows}

        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration_file.stem.split("_")[0]

            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration {version}: {migration_file.name}")
            sql = migration_file.read_text(encoding="utf-8")

            try:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO schema_migrations (version) VALUES ($1)",
                        version,
                    )
                logger.info(f"Migration {version} applied successfully")
            except Exception as e:
                logger.error(f"Migration {version} failed: {e}")
                raise


# =============================================================================
# Instance Queries
# =============================================================================

async def insert_instance(
    pool: asyncpg.Pool,
    customer_id: str,
    plan: str,
    login_secret: str,
    specs: Dict[str, Any],
    charge_reference: Optional[str] = None,
    login_username: str = "root",
) -> asyncpg.Record:
    """
    Insert a new instance in the provisioning state.

    Raises:
        asyncpg.UniqueViolationError: customer already has a non-terminal instance
    """
    return await pool.fetchrow(
        """
        INSERT INTO instances (
            customer_id, plan, status, login_username, login_secret, specs, charge_reference
        ) VALUES ($1, $2, 'provisioning', $3, $4, $5::jsonb, $6)
        RETURNING *
        """,
        customer_id, plan, login_username, login_secret, json.dumps(specs), charge_reference,
    )


async def get_instance(pool: asyncpg.Pool, instance_id: int) -> Optional[asyncpg.Record]:
    return await pool.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)


async def get_active_instance_for_customer(pool: asyncpg.Pool, customer_id: str) -> Optional[asyncpg.Record]:
    """Get the customer's non-terminal instance, if any."""
    return await pool.fetchrow(
        """
        SELECT * FROM instances
        WHERE customer_id = $1 AND status NOT IN ('failed', 'deleted')
        ORDER BY created_at DESC
        LIMIT 1
        """,
        customer_id,
    )


async def get_instance_by_charge_reference(pool: asyncpg.Pool, charge_reference: str) -> Optional[asyncpg.Record]:
    return await pool.fetchrow(
        "SELECT * FROM instances WHERE charge_reference = $1 ORDER BY created_at DESC LIMIT 1",
        charge_reference,
    )


async def list_instances_by_status(pool: asyncpg.Pool, status: str) -> List[asyncpg.Record]:
    return await pool.fetch(
        "SELECT * FROM instances WHERE status = $1 ORDER BY id",
        status,
    )


async def update_instance(pool: asyncpg.Pool, instance_id: int, **fields) -> bool:
    """Single-row update keyed by primary id. Returns False if the row is gone."""
    unknown = set(fields) - INSTANCE_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update instance columns: {sorted(unknown)}")
    if not fields:
        return True

    columns = list(fields)
    assignments = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(columns))
    result = await pool.execute(
        f"UPDATE instances SET {assignments}, updated_at = NOW() WHERE id = $1",
        instance_id,
        *[fields[col] for col in columns],
    )
    return result.endswith(" 1")


async def delete_instance(pool: asyncpg.Pool, instance_id: int) -> bool:
    result = await pool.execute("DELETE FROM instances WHERE id = $1", instance_id)
    return result.endswith(" 1")


async def list_provider_ids_for_customer(
    pool: asyncpg.Pool,
    customer_id: str,
    exclude_instance_id: Optional[int] = None,
) -> List[str]:
    """Droplet ids already linked to the customer's other instance rows."""
    rows = await pool.fetch(
        """
        SELECT provider_instance_id FROM instances
        WHERE customer_id = $1
          AND provider_instance_id IS NOT NULL
          AND id IS DISTINCT FROM $2
        """,
        customer_id, exclude_instance_id,
    )
    return [row["provider_instance_id"] for row in rows]


async def claim_charge(pool: asyncpg.Pool, charge_reference: str, customer_id: str) -> bool:
    """
    Record that a charge started provisioning.

    Returns:
        False if the charge was claimed before
    """
    claimed = await pool.fetchval(
        """
        INSERT INTO processed_charges (charge_reference, customer_id)
        VALUES ($1, $2)
        ON CONFLICT (charge_reference) DO NOTHING
        RETURNING charge_reference
        """,
        charge_reference, customer_id,
    )
    return claimed is not None


# =============================================================================
# Domain Queries
# =============================================================================

async def insert_domain(pool: asyncpg.Pool, instance_id: int, hostname: str) -> asyncpg.Record:
    return await pool.fetchrow(
        "INSERT INTO domains (instance_id, hostname) VALUES ($1, $2) RETURNING *",
        instance_id, hostname,
    )


async def get_domain(pool: asyncpg.Pool, domain_id: int) -> Optional[asyncpg.Record]:
    return await pool.fetchrow("SELECT * FROM domains WHERE id = $1", domain_id)


async def delete_domain(pool: asyncpg.Pool, domain_id: int) -> bool:
    result = await pool.execute("DELETE FROM domains WHERE id = $1", domain_id)
    return result.endswith(" 1")


async def set_domain_pending(pool: asyncpg.Pool, domain_id: int) -> bool:
    """Initial 'pending' state when a certificate request is submitted."""
    result = await pool.execute(
        "UPDATE domains SET ssl_status = 'pending' WHERE id = $1",
        domain_id,
    )
    return result.endswith(" 1")


async def record_domain_verification(
    pool: asyncpg.Pool,
    domain_id: int,
    ssl_status: str,
    dns_valid: bool,
    cert_exists: bool,
    reachable: bool,
    expected_ip: Optional[str],
) -> bool:
    result = await pool.execute(
        """
        UPDATE domains SET
            ssl_status = $2,
            ssl_dns_valid = $3,
            ssl_cert_exists = $4,
            ssl_reachable = $5,
            ssl_last_verified_at = NOW(),
            expected_ip = $6,
            ssl_enabled = $7
        WHERE id = $1
        """,
        domain_id, ssl_status, dns_valid, cert_exists, reachable, expected_ip,
        ssl_status == "active",
    )
    return result.endswith(" 1")


async def record_partial_domain_verification(
    pool: asyncpg.Pool,
    domain_id: int,
    dns_valid: bool,
    reachable: bool,
    expected_ip: Optional[str],
) -> bool:
    """Store the DNS and TLS observations; status and certificate flag are left as they were."""
    result = await pool.execute(
        """
        UPDATE domains SET
            ssl_dns_valid = $2,
            ssl_reachable = $3,
            ssl_last_verified_at = NOW(),
            expected_ip = $4
        WHERE id = $1
        """,
        domain_id, dns_valid, reachable, expected_ip,
    )
    return result.endswith(" 1")


async def list_domains_for_reconciliation(pool: asyncpg.Pool) -> List[Tuple[asyncpg.Record, asyncpg.Record]]:
    """
    Domains with any non-trivial certificate state whose instance is running.

    Returns:
        List of (domain_row, instance_row) pairs
    """
    domain_rows = await pool.fetch(
        """
        SELECT d.* FROM domains d
        JOIN instances i ON i.id = d.instance_id
        WHERE d.ssl_status != 'none' AND i.status = 'running'
        ORDER BY d.id
        """
    )
    if not domain_rows:
        return []

    instance_ids = list({row["instance_id"] for row in domain_rows})
    instance_rows = await pool.fetch(
        "SELECT * FROM instances WHERE id = ANY($1::int[])",
        instance_ids,
    )
    instances = {row["id"]: row for row in instance_rows}

    return [
        (row, instances[row["instance_id"]])
        for row in domain_rows
        if row["instance_id"] in instances
    ]


async def check_health(pool: asyncpg.Pool) -> Dict[str, Any]:
    """Check database connectivity and return instance counts."""
    try:
        await pool.fetchval("SELECT 1")
        rows = await pool.fetch("SELECT status, COUNT(*) AS n FROM instances GROUP BY status")
        domain_count = await pool.fetchval("SELECT COUNT(*) FROM domains")

        return {
            "status": "healthy",
            "connected": True,
            "instances": {row["status"]: row["n"] for row in rows},
            "domains_total": domain_count,
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "connected": False,
            "error": str(e),
        }
