import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.config import DATABASE_URL
from app.database import Database


async def init_db(url: str = DATABASE_URL):
    database = Database(url, echo=True)
    try:
        await database.create_all()
    finally:
        await database.dispose()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
