import os
import sys
from pathlib import Path

os.environ.setdefault("VAULT_ETH_RPC_URL", "http://localhost:8545")
os.environ.setdefault("VAULT_CHAIN_ID", "31337")
os.environ.setdefault("VAULT_DRY_RUN", "true")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
