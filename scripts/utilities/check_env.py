import os
import sys

sys.path.insert(0, os.path.realpath(os.path.join(os.path.dirname(__file__), "..", "..")))

from block_ingest.config import load_settings
from block_ingest.models import ChainId
from block_ingest.services.error_handler import ErrorHandler
from block_ingest.services.substrate_rpc import SubstrateRPCService
from block_ingest.utils.exceptions import IngestError


def check_environment():
    """
    Checks if the environment is set up correctly.
    - Checks settings load from the environment / .env.
    - Checks the data directory is writable.
    - Checks each configured chain endpoint answers with a tip header.
    """
    print("--- Starting Environment Check ---")
    try:
        settings = load_settings()
    except IngestError as e:
        print(f"🔥 {e}")
        print("🔥 Environment is not set up correctly.")
        return False
    print("✅ Settings loaded.")

    ok = True
    try:
        os.makedirs(settings.DATA_DIR, exist_ok=True)
        probe = os.path.join(settings.DATA_DIR, ".write-check")
        with open(probe, "w") as f:
            f.write("ok")
        os.remove(probe)
        print(f"✅ Data directory '{settings.DATA_DIR}' is writable.")
    except OSError as e:
        print(f"❌ Data directory '{settings.DATA_DIR}' is not writable: {e}")
        ok = False

    for chain in ChainId:
        if not settings.has_endpoint(chain):
            print(f"⚠️  No endpoint configured for '{chain.value}', it will be skipped.")
            continue
        source = SubstrateRPCService(settings.rpc_url(chain), chain, error_handler=ErrorHandler(max_retries=0))
        try:
            tip = source.get_tip_header()
            print(f"✅ '{chain.value}' reachable, tip #{tip.number}.")
        except IngestError as e:
            print(f"❌ '{chain.value}' unreachable: {e}")
            ok = False
        finally:
            source.close()

    print("\n--- Environment Check Complete ---")
    if ok:
        print("🎉 Environment is set up correctly!")
    else:
        print("🔥 Environment is not set up correctly.")
    return ok


if __name__ == "__main__":
    sys.exit(0 if check_environment() else 1)
