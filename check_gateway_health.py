#!/usr/bin/env python3
"""
Quick health check for the Collaborative Gateway
Loads the configuration, spawns and handshakes every configured participant,
then tears them all down again.
"""

import asyncio
import os
import sys

from collab_gateway.config import load_config, spawn_spec_provider
from collab_gateway.errors import ConfigError, ParticipantError
from collab_gateway.registry import ClientRegistry


def print_header(text):
    print(f"\n{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}\n")


def check_config(path=None):
    """Load and validate the configuration; returns (ok, config)"""
    print("1️⃣  Checking Configuration...")
    source = path or os.getenv('COLLAB_GATEWAY_CONFIG')
    if source:
        print(f"   📁 Config file: {source}")
    else:
        print("   ℹ️  No config file, using built-in participants")

    try:
        config = load_config(path)
    except ConfigError as e:
        print(f"   ❌ {e}")
        return False, None

    print(f"   ✅ {len(config.participants)} participant(s) configured")
    print(f"   ✅ Defaults: {', '.join(config.default_participants)}")
    print(f"   ✅ Consensus: {config.consensus.strategy}")
    return True, config


async def probe_participants(config):
    """Spawn + handshake every participant; returns ({identity: {"success": ...}}, close_all report)"""
    registry = ClientRegistry(spawn_spec_provider(config))
    report = {}

    async def probe(identity):
        try:
            client = await registry.get_or_create(identity)
        except ParticipantError as e:
            return identity, {"success": False, **e.to_dict()}
        return identity, {
            "success": True,
            "pid": client.pid,
            "server_info": client.server_info,
        }

    try:
        for identity, outcome in await asyncio.gather(*(probe(p) for p in config.participants)):
            report[identity] = outcome
    finally:
        shutdown = await registry.close_all(config.shutdown_deadline)
    return report, shutdown


def check_participants(config):
    """Check that every participant starts and answers initialize"""
    print("\n2️⃣  Checking Participants...")
    report, shutdown = asyncio.run(probe_participants(config))

    healthy = True
    for identity, outcome in report.items():
        if outcome["success"]:
            info = outcome.get("server_info") or {}
            name = info.get("serverInfo", {}).get("name", "unknown") if isinstance(info, dict) else "unknown"
            print(f"   ✅ {identity}: ready (pid {outcome['pid']}, server {name})")
        else:
            print(f"   ❌ {identity}: {outcome['kind']}: {outcome['message']}")
            healthy = False

    if shutdown["killed"]:
        print(f"   ⚠️  Force-killed on shutdown: {', '.join(shutdown['killed'])}")
    else:
        print(f"   ✅ All participants shut down cleanly")
    return healthy


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    path = argv[0] if argv else None

    print_header("Collaborative Gateway Health Check")

    config_ok, config = check_config(path)
    results = {
        'config': config_ok,
        'participants': check_participants(config) if config_ok else False,
    }

    print_header("Summary")

    passed = sum(1 for v in results.values() if v)
    total = len(results)

    for name, result in results.items():
        status = "✅ PASS" if result else "❌ FAIL"
        print(f"   {status} - {name}")

    print(f"\n   Score: {passed}/{total} checks passed")

    if all(results.values()):
        print("\n🎉 All checks passed! The gateway is ready to use!")
    else:
        print("\n⚠️  Some checks failed. Please review the errors above.")
        print("\n📋 Troubleshooting:")
        print("   1. Check: COLLAB_GATEWAY_CONFIG")
        print("   2. Run the failing participant command by hand")
        print("   3. Set COLLAB_GATEWAY_LOG_LEVEL=DEBUG to see participant stderr")

    return 0 if all(results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
