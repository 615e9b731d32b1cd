#!/usr/bin/env python3
"""
Setup Verification Script

Checks configuration, Redis, PostgreSQL, the EMR API and the notification
gateway before the scheduler is started.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def mask(value: str) -> str:
    return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "***"


def check_env_file() -> bool:
    env_path = project_root / ".env"
    exists = env_path.exists()
    if not exists:
        print_result(".env file", False, "File not found. Copy .env.example to .env")
    else:
        print_result(".env file", True, "Found")
    return exists


def check_required_vars() -> dict[str, bool]:
    """Check the variables the scheduler cannot run without."""
    results = {}

    required = [
        ("REDIS_URL", "Required for transactions, caches and jobs"),
        ("EMR_BASE_URL", "Practice-management system base URL"),
        ("EMR_CLIENT_ID", "OAuth2 client id"),
        ("EMR_CLIENT_SECRET", "OAuth2 client secret"),
    ]

    for var, description in required:
        value = os.getenv(var, "")
        if not value:
            print_result(var, False, f"Not set - {description}")
            results[var] = False
            continue
        shown = mask(value) if "SECRET" in var else value
        print_result(var, True, f"Set ({shown})")
        results[var] = True

    return results


def check_timezone() -> bool:
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    name = os.getenv("PRACTICE_TIMEZONE", "America/New_York")
    try:
        ZoneInfo(name)
    except ZoneInfoNotFoundError:
        print_result("PRACTICE_TIMEZONE", False, f"Unknown timezone '{name}'")
        return False
    print_result("PRACTICE_TIMEZONE", True, name)
    return True


def check_optional_vars() -> None:
    optional = [
        ("APP_ENV", "development"),
        ("DEBUG", "false"),
        ("PORT", "8000"),
        ("DATABASE_URL", "(default local PostgreSQL)"),
        ("NOTIFICATION_GATEWAY_URL", "(log only)"),
        ("JOB_POLL_INTERVAL", "15"),
    ]

    for var, default in optional:
        print_result(var, True, os.getenv(var, default))


async def check_postgres() -> bool:
    from app.infra.database import check_db_health

    healthy = await check_db_health()
    if healthy:
        print_result("PostgreSQL", True, "Connection successful")
    else:
        print_result("PostgreSQL", False, "Connection failed (change history disabled)")
    return healthy


async def check_redis() -> bool:
    from app.infra.redis import RedisClient, check_redis_health

    healthy = await check_redis_health()
    if healthy:
        print_result("Redis", True, "Connection successful")
    else:
        print_result("Redis", False, "Connection failed")
    await RedisClient.close()
    return healthy


async def check_emr() -> bool:
    """Authenticate against the EMR and read its capability statement."""
    from app.core.scheduling.emr_client import EMRClient

    client = EMRClient()
    try:
        result = await client.test_connection()
    finally:
        await client.close()

    details = result.get("details") or {}
    if result["success"]:
        print_result("EMR API", True, f"FHIR {details.get('fhir_version') or 'unknown'}")
    else:
        print_result("EMR API", False, result["message"][:80])
    return result["success"]


async def check_notification_gateway() -> bool:
    import httpx

    url = os.getenv("NOTIFICATION_GATEWAY_URL", "")
    if not url:
        print_result("Notification gateway", True, "Not configured, deliveries are logged")
        return True

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.head(url)
        print_result("Notification gateway", True, f"Reachable at {url}")
        return True
    except httpx.RequestError:
        print_result("Notification gateway", False, f"Not reachable at {url}")
        return False


def check_dependencies() -> bool:
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "sqlalchemy",
        "asyncpg",
        "redis",
        "httpx",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    print_result("Python packages", True, "All required packages installed")
    return True


async def main():
    print("\n" + "="*60)
    print(" Practice Scheduler - Setup Verification")
    print("="*60)

    critical_failed = False
    warnings = False

    print_header("Environment File")
    if not check_env_file():
        warnings = True

    print_header("Python Dependencies")
    if not check_dependencies():
        critical_failed = True

    print_header("Required Environment Variables")
    var_results = check_required_vars()
    if not all(var_results.values()):
        critical_failed = True
    if not check_timezone():
        critical_failed = True

    print_header("Optional Environment Variables")
    check_optional_vars()

    if critical_failed:
        print_header("Summary")
        print("\n  \033[91mCRITICAL: fix the configuration above before checking services.\033[0m\n")
        return 1

    print_header("Service Connections")
    if not await check_redis():
        critical_failed = True
    if not await check_emr():
        critical_failed = True
    if not await check_postgres():
        warnings = True
    if not await check_notification_gateway():
        warnings = True

    print_header("Summary")
    if critical_failed:
        print("\n  \033[91mCRITICAL: Redis and the EMR API must be reachable.\033[0m\n")
        return 1
    if warnings:
        print("\n  \033[93mWARNING: Some optional checks failed.\033[0m")
        print("  The scheduler will run with limited functionality.\n")
        return 0

    print("\n  \033[92mAll checks passed!\033[0m")
    print("  You can start the application with:")
    print("    uvicorn app.main:app --reload\n")
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
