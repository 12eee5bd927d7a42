# benefit_guard/demo/seed_demo_data.py

import asyncio

from benefit_guard.storage.db import DEFAULT_DB_PATH
from benefit_guard.storage.directory import CredentialDirectory
from benefit_guard.storage.ledger import CreditLedger
from benefit_guard.storage.repository import initialize_schema


async def seed(db_path: str = DEFAULT_DB_PATH) -> None:
    initialize_schema(db_path)
    directory = CredentialDirectory(db_path)
    ledger = CreditLedger(db_path)

    user = await directory.find_user("demo")
    if user is None:
        user = await directory.create_user(name="Demo Operator", login="demo")
    await ledger.grant(user.id, credits=10)


if __name__ == "__main__":
    asyncio.run(seed())
    print("Demo user 'demo' seeded with 10 credits")
