"""
Initialize the database with pgvector extension and create tables.

Run this script to set up your database:
    python -m helpdesk.db.init_db
"""
from sqlalchemy import text
from sqlalchemy.engine import Engine

from helpdesk.config import load_settings
from .database import Base, create_db_engine
from . import models  # noqa: F401  registers the tables on Base.metadata


def init_db(engine: Engine):
    """Create pgvector extension (PostgreSQL only) and all tables with indexes"""

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()
            print("✓ pgvector extension enabled")

    # Create all tables (SQLAlchemy will create indexes defined in __table_args__)
    Base.metadata.create_all(bind=engine)
    print("✓ Database tables created")


if __name__ == "__main__":
    init_db(create_db_engine(load_settings().database_url))

    print("\nTables created:")
    print("  - knowledge_articles (article text, embedding, helpful counters)")
    print("  - chat_conversations (conversation lifecycle, sequence counter)")
    print("  - chat_messages (ordered messages, UNIQUE(conversation_id, sequence))")
    print("  - feedback (UNIQUE(user_id, item_id, item_type))")
