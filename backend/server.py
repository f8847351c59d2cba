"""
CRM - API Backend (import clients)

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --timeout-keep-alive 600
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import db, client, CORS_ORIGINS

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("crm")

# Créer l'app
app = FastAPI(
    title="CRM Clients",
    description="CRM - import en masse des clients (CSV / JSON)",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== IMPORT DES ROUTES ====================

from routes import clients

# Routes avec préfixe /api
app.include_router(clients.router, prefix="/api")

# ==================== ROUTE RACINE ====================

@app.get("/")
async def root():
    return {
        "name": "CRM Clients API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== STARTUP / SHUTDOWN ====================

@app.on_event("startup")
async def startup():
    logger.info("CRM API démarrée")

    # Index sur les collections
    await db.clients.create_index("email")
    await db.clients.create_index("externalId")
    await db.clients.create_index("ownedBy")
    await db.clients.create_index([("contactStatus", 1), ("industry", 1)])
    await db.clients.create_index("createdAt")
    await db.users.create_index("email", unique=True)
    await db.sessions.create_index("token")
    await db.activities.create_index([("clientId", 1), ("createdAt", -1)])

    logger.info("Index MongoDB créés")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001, timeout_keep_alive=600)
