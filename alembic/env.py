from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from cashback_engine.config import DATABASE_URL
from cashback_engine.db import Base

from cashback_engine.models.tier import Tier
from cashback_engine.models.customer import Customer
from cashback_engine.models.customer_membership import CustomerMembership
from cashback_engine.models.tier_change_log import TierChangeLog
from cashback_engine.models.cashback_transaction import CashbackTransaction
from cashback_engine.models.store_credit_ledger_entry import StoreCreditLedgerEntry
from cashback_engine.models.customer_analytics import CustomerAnalytics
from cashback_engine.models.maintenance_job import MaintenanceJob


config = context.config
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
