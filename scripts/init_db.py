"""
Database initialization script.
Creates all decision engine tables.
"""
from sqlalchemy import inspect
from src.models.base import Base, engine
# CRITICAL: Import all models to register them
from src.models.positions import Position
from src.models.decisions import DecisionLog
from src.models.rule_performance import RulePerformance
from src.models.regime_stability import RegimeStability
from src.models.regime_performance import RegimePerformance
from src.models.source_credibility import SourceCredibility

def init_database(bind=None):
    """
    Initialize database with all tables.
    Steps:
    1. Create all tables from SQLAlchemy models
    2. Verify the expected tables exist
    """
    bind = bind or engine

    print("Options Decision Engine - Database Initialization")
    print("=" * 50)

    # Step 1: Create all tables
    print("\n1. Creating all tables...")
    try:
        Base.metadata.create_all(bind=bind)
        print("  ✓ All tables created")
    except Exception as e:
        print(f"  ✗ Error creating tables: {e}")
        raise

    # Step 2: Verify
    print("\n2. Verifying tables...")
    tables = sorted(inspect(bind).get_table_names())
    print(f"  ✓ Found {len(tables)} tables:")
    for table in tables:
        print(f"    - {table}")

    expected = {
        Position.__tablename__,
        DecisionLog.__tablename__,
        RulePerformance.__tablename__,
        RegimeStability.__tablename__,
        RegimePerformance.__tablename__,
        SourceCredibility.__tablename__,
    }
    missing = expected - set(tables)
    if missing:
        raise RuntimeError(f"Missing tables: {sorted(missing)}")

    print("\n" + "=" * 50)
    print("✅ Database initialization complete!")
    return tables

if __name__ == "__main__":
    init_database()
