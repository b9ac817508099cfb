from pathlib import Path

from checkins import crypto

# Quick one-off generator for the shared signing secret.
# - 32 random bytes, Base64url so it pastes cleanly into a .env file.
# - Every relay and client must use the same value.

# 1) Generate the secret.
secret = crypto.new_secret()

# 2) Append it to ./.env unless one is already configured there.
env_path = Path(".env")
existing = env_path.read_text(encoding="utf-8") if env_path.exists() else ""
if "CHECKINS_SIGNING_SECRET=" in existing:
    print(f"{env_path} already has CHECKINS_SIGNING_SECRET; not touching it.")
else:
    with open(env_path, "a", encoding="utf-8") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(f"CHECKINS_SIGNING_SECRET={secret}\n")
    print(f"Wrote CHECKINS_SIGNING_SECRET to {env_path}")

# 3) Print it so it can be copied to the other machines.
print(secret)
