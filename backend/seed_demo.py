"""
Jeu de données de démonstration : un admin, une boutique (compte de versement vérifié),
un acheteur. Affiche un token d'accès par compte pour tester l'API.

    python seed_demo.py
"""
import asyncio
from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorClient

from config import settings
from core.security import create_access_token

STORE_ID = "sto_demo00000001"

TEST_USERS = [
    {"user_id": "usr_demoadmin01", "name": "Amaka (Admin)",    "role": "admin",       "email": "admin@marketplace.example"},
    {"user_id": "usr_demostore01", "name": "Tunde (Boutique)", "role": "store_owner", "email": "boutique@marketplace.example",
     "store_id": STORE_ID},
    {"user_id": "usr_demobuyer01", "name": "Chioma (Acheteuse)", "role": "buyer",     "email": "acheteur@marketplace.example"},
]

DEMO_STORE = {
    "store_id":    STORE_ID,
    "name":        "Boutique Démo Lagos",
    "store_email": "boutique@marketplace.example",
    "payout_accounts": [{
        "payout_method": "bank_transfer",
        "bank_details": {
            "bank_name":           "Demo Bank",
            "account_number":      "0123456789",
            "account_holder_name": "Tunde Demo",
            "bank_code":           58,
        },
    }],
}


async def seed_demo():
    print(f"🔌 Connexion à MongoDB : {settings.DB_NAME}")
    client = AsyncIOMotorClient(settings.MONGO_URL)
    db = client[settings.DB_NAME]
    now = datetime.now(timezone.utc)

    print("\n---------- COMPTES ------------")
    for u in TEST_USERS:
        await db.users.update_one(
            {"user_id": u["user_id"]},
            {
                "$set": {**u, "is_active": True, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        token = create_access_token({"sub": u["user_id"]})
        print(f"✅ {u['role'].upper():<12} -> {u['user_id']}\n   token : {token}")

    await db.stores.update_one(
        {"store_id": STORE_ID},
        {"$set": {**DEMO_STORE, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    # Wallet créé à l'inscription de la boutique
    await db.wallets.update_one(
        {"store_id": STORE_ID},
        {"$setOnInsert": {
            "wallet_id":    "wlt_demo00000001",
            "balance":      0,
            "pending":      0,
            "total_earned": 0,
            "currency":     settings.CURRENCY,
            "created_at":   now,
            "updated_at":   now,
        }},
        upsert=True,
    )
    print(f"\n🏪 Boutique {STORE_ID} prête (compte 0123456789, wallet wlt_demo00000001)")

    print("\n-------------------------------------------")
    print("🚀 TERMINÉ ! DONNÉES DE DÉMO CRÉÉES OU MISES À JOUR.")
    client.close()


if __name__ == "__main__":
    asyncio.run(seed_demo())
