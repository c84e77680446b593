# scripts/security_sweep_once.py
import asyncio
from app.services.registry import close_security_services
from app.services.scheduler import run_security_sweep

async def main():
    try:
        count = await run_security_sweep()
        print({"recent_events": count})
    finally:
        await close_security_services()

if __name__ == "__main__":
    asyncio.run(main())
