"""Database schema migrations."""

SCHEMA_VERSION = 2

MIGRATIONS = {
    1: """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            currency TEXT NOT NULL,
            balance TEXT NOT NULL DEFAULT '0',
            is_active INTEGER NOT NULL DEFAULT 1,
            deleted_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS automation_rules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            condition_logic TEXT NOT NULL DEFAULT 'and',
            conditions TEXT NOT NULL DEFAULT '{}',
            actions TEXT NOT NULL DEFAULT '{}',
            rule_type TEXT NOT NULL DEFAULT 'general',
            transfer_to_account_id TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_automation_rules_active_priority
            ON automation_rules(is_active, priority DESC);

        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            type TEXT NOT NULL,
            amount TEXT NOT NULL,
            date TEXT NOT NULL,
            time TEXT,
            description TEXT NOT NULL,
            transfer_to_account_id TEXT,
            transfer_id TEXT,
            category_id TEXT,
            notes TEXT,
            source TEXT NOT NULL,
            raw_text TEXT,
            is_reconciled INTEGER NOT NULL DEFAULT 0,
            reconciled_at TEXT,
            applied_rules TEXT NOT NULL DEFAULT '[]',
            balance_applied INTEGER NOT NULL DEFAULT 0,
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_account_date
            ON transactions(account_id, date);
        CREATE INDEX IF NOT EXISTS idx_transactions_raw_text
            ON transactions(raw_text, source);

        INSERT INTO schema_version (version) VALUES (1);
    """,
    2: """
        ALTER TABLE transactions ADD COLUMN duplicate_status TEXT;
        ALTER TABLE transactions ADD COLUMN duplicate_of TEXT;
        ALTER TABLE transactions ADD COLUMN import_id TEXT;

        CREATE INDEX IF NOT EXISTS idx_transactions_import
            ON transactions(import_id);

        UPDATE schema_version SET version = 2;
    """,
}


def get_migration_sql(from_version: int, to_version: int) -> list[str]:
    """Get list of migration SQL statements to run."""
    statements = []
    for version in range(from_version + 1, to_version + 1):
        if version in MIGRATIONS:
            statements.append(MIGRATIONS[version])
    return statements
