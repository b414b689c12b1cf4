"""Print a fresh `crypto` section for context-auth.yaml."""
import argparse
import secrets

import yaml

from context_auth.utils.crypto import FieldCipher
from context_auth.utils.helpers import b64u

parser = argparse.ArgumentParser(description=__doc__)
parser.add_argument("--version", default="v1", help="key version label stored with every ciphertext")
args = parser.parse_args()

section = {
    "crypto": {
        "active_key_version": args.version,
        "keys": {args.version: FieldCipher.generate_key()},
        # keep this one stable across key rotations, lookups depend on it
        "index_key": b64u(secrets.token_bytes(32)),
    }
}
print(yaml.safe_dump(section, sort_keys=False), end="")
