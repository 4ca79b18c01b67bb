"""templates.py — Target-side files and script fragments.

Renderers return shell lines (joined by the caller) in the same way the phase
and remediation bodies are assembled. Values from configuration are quoted with
``shlex.quote``; embedded Python helpers take their inputs from argv or the
environment so the heredocs themselves stay constant.
"""
from __future__ import annotations

import base64
import shlex
from typing import List, Tuple

from .config import MESH_DASHBOARD_HTTPS_PORT, MESH_GATEWAY_HTTPS_PORT, DeployConfig

SSHD_DROPIN_PATH = "/etc/ssh/sshd_config.d/60-tusk-hardening.conf"
UPDATE_LOG_FILE = "/var/log/poseidon-update.log"
LOCAL_DEV_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173"

_q = shlex.quote


def unit_path(service: str) -> str:
    return f"/etc/systemd/system/{service}.service"


def webhook_service(config: DeployConfig) -> str:
    return f"{config.dashboard_service}-webhook"


def webhook_listener_path(config: DeployConfig) -> str:
    return f"{config.webhook_dir}/listener.py"


# ---------------------------------------------------------------------------
# Host hardening
# ---------------------------------------------------------------------------

def sshd_dropin_lines() -> List[str]:
    return [
        f"mkdir -p {_q(SSHD_DROPIN_PATH.rsplit('/', 1)[0])}",
        f"cat > {_q(SSHD_DROPIN_PATH)} <<'SSHEOF'",
        "PasswordAuthentication no",
        "PermitRootLogin prohibit-password",
        "KbdInteractiveAuthentication no",
        "SSHEOF",
        "sshd -t",
        "systemctl reload ssh 2>/dev/null || systemctl reload sshd",
    ]


def firewall_lines(config: DeployConfig) -> List[str]:
    lines = [
        "command -v ufw >/dev/null || DEBIAN_FRONTEND=noninteractive apt-get install -y ufw",
        "ufw default deny incoming",
        "ufw default allow outgoing",
        "ufw allow 22/tcp",
    ]
    if config.mesh_enabled:
        lines.append("ufw allow 41641/udp")
    if config.webhook_enabled:
        lines.append(f"ufw allow {int(config.webhook_port)}/tcp")
    lines.append("ufw --force enable")
    return lines


# ---------------------------------------------------------------------------
# Gateway configuration (JSON merged in place on the target)
# ---------------------------------------------------------------------------

_GATEWAY_SHAPE_PROBE = '''python3 - {path} {port} <<'PY'
import json, sys
try:
    with open(sys.argv[1]) as fh:
        gw = json.load(fh).get("gateway") or {{}}
except (OSError, ValueError):
    print("unreadable")
    raise SystemExit(0)
want = {{"mode": "local", "bind": "loopback", "port": int(sys.argv[2])}}
drift = [key for key, value in want.items() if gw.get(key) != value]
if (gw.get("auth") or {{}}).get("mode") != "token":
    drift.append("auth.mode")
print("ok" if not drift else "drift:" + ",".join(drift))
PY'''

_GATEWAY_SHAPE_MERGE = '''python3 - {path} {port} <<'PY'
import json, os, sys
path = sys.argv[1]
try:
    with open(path) as fh:
        cfg = json.load(fh)
except (OSError, ValueError):
    cfg = {{}}
gw = cfg.setdefault("gateway", {{}})
gw.update({{"mode": "local", "bind": "loopback", "port": int(sys.argv[2])}})
gw.setdefault("auth", {{}})["mode"] = "token"
os.makedirs(os.path.dirname(path), exist_ok=True)
tmp = path + ".tmp"
with open(tmp, "w") as fh:
    json.dump(cfg, fh, indent=2)
os.chmod(tmp, 0o600)
os.replace(tmp, path)
PY'''

_GATEWAY_TOKEN_DIGEST = '''python3 - {path} <<'PY'
import hashlib, json, sys
try:
    with open(sys.argv[1]) as fh:
        token = ((json.load(fh).get("gateway") or {{}}).get("auth") or {{}}).get("token") or ""
except (OSError, ValueError):
    token = ""
print(hashlib.sha256(token.encode()).hexdigest() if token else "")
PY'''

_GATEWAY_TOKEN_READ = '''python3 - {path} <<'PY'
import json, sys
try:
    with open(sys.argv[1]) as fh:
        print(((json.load(fh).get("gateway") or {{}}).get("auth") or {{}}).get("token") or "")
except (OSError, ValueError):
    print("")
PY'''

# Token arrives via the environment, never argv.
_GATEWAY_TOKEN_WRITE = '''python3 - {path} <<'PY'
import json, os, sys
path = sys.argv[1]
try:
    with open(path) as fh:
        cfg = json.load(fh)
except (OSError, ValueError):
    cfg = {{}}
auth = cfg.setdefault("gateway", {{}}).setdefault("auth", {{}})
auth["mode"] = "token"
auth["token"] = os.environ["TUSK_GATEWAY_TOKEN"]
os.makedirs(os.path.dirname(path), exist_ok=True)
tmp = path + ".tmp"
with open(tmp, "w") as fh:
    json.dump(cfg, fh, indent=2)
os.chmod(tmp, 0o600)
os.replace(tmp, path)
PY'''

_GATEWAY_ORIGINS_READ = '''python3 - {path} <<'PY'
import json, sys
try:
    with open(sys.argv[1]) as fh:
        gw = json.load(fh).get("gateway") or {{}}
    print(",".join((gw.get("controlUi") or {{}}).get("allowedOrigins") or []))
except (OSError, ValueError):
    print("")
PY'''

_GATEWAY_ORIGINS_MERGE = '''python3 - {path} "$TS_FQDN" {https_port} <<'PY'
import json, sys
path, fqdn, port = sys.argv[1], sys.argv[2], sys.argv[3]
with open(path) as fh:
    cfg = json.load(fh)
origins = cfg.setdefault("gateway", {{}}).setdefault("controlUi", {{}}).setdefault("allowedOrigins", [])
for origin in ("https://" + fqdn, "https://%s:%s" % (fqdn, port)):
    if origin not in origins:
        origins.append(origin)
with open(path, "w") as fh:
    json.dump(cfg, fh, indent=2)
PY'''


def gateway_shape_probe(config: DeployConfig) -> str:
    return _GATEWAY_SHAPE_PROBE.format(path=_q(config.gateway_config_path), port=int(config.gateway_port))


def gateway_shape_merge_lines(config: DeployConfig) -> List[str]:
    return [
        _GATEWAY_SHAPE_MERGE.format(path=_q(config.gateway_config_path), port=int(config.gateway_port)),
        f"chown -R {_q(config.operator_user)}:{_q(config.operator_user)} {_q(config.gateway_home + '/.openclaw')}",
    ]


def gateway_token_digest_probe(config: DeployConfig) -> str:
    return _GATEWAY_TOKEN_DIGEST.format(path=_q(config.gateway_config_path))


def gateway_token_read_probe(config: DeployConfig) -> str:
    return _GATEWAY_TOKEN_READ.format(path=_q(config.gateway_config_path))


def operator_account_lines(config: DeployConfig) -> List[str]:
    """Create the service account and own its home, even one created earlier by root."""
    user = _q(config.operator_user)
    home = _q(config.gateway_home)
    return [
        f"if ! id -u {user} >/dev/null 2>&1; then",
        f"  useradd --create-home --home-dir {home} --shell /bin/bash {user}",
        "fi",
        f"chown {user}:{user} {home}",
    ]


def boot_wait_lines(config: DeployConfig) -> List[str]:
    return [
        "if command -v cloud-init >/dev/null; then "
        f"timeout {int(config.platform_init_timeout)} cloud-init status --wait >/dev/null 2>&1 || true; fi",
    ]


def gateway_token_write_lines(config: DeployConfig, token: str) -> List[str]:
    """First-boot user data must finish and the operator must exist before its home is written."""
    return [
        *boot_wait_lines(config),
        *operator_account_lines(config),
        f"TUSK_GATEWAY_TOKEN={_q(token)} " + _GATEWAY_TOKEN_WRITE.format(path=_q(config.gateway_config_path)),
        f"chown -R {_q(config.operator_user)}:{_q(config.operator_user)} {_q(config.gateway_home + '/.openclaw')}",
    ]


def gateway_origins_probe(config: DeployConfig) -> str:
    return _GATEWAY_ORIGINS_READ.format(path=_q(config.gateway_config_path))


def gateway_origins_merge_lines(config: DeployConfig) -> List[str]:
    """Expects ``$TS_FQDN`` to be set by the preceding lines."""
    return [
        _GATEWAY_ORIGINS_MERGE.format(path=_q(config.gateway_config_path), https_port=MESH_GATEWAY_HTTPS_PORT),
        f"chown {_q(config.operator_user)}:{_q(config.operator_user)} {_q(config.gateway_config_path)}",
        f"systemctl restart {_q(config.gateway_service)}",
    ]


def restart_lines(service: str, settle: int = 3) -> List[str]:
    return [
        f"systemctl restart {_q(service)}",
        f"sleep {int(settle)}",
        f"systemctl is-active --quiet {_q(service)}",
    ]


# ---------------------------------------------------------------------------
# Dashboard (companion service)
# ---------------------------------------------------------------------------

def dashboard_unit_lines(config: DeployConfig) -> List[str]:
    return [
        f"cat > {_q(unit_path(config.dashboard_service))} <<'UNITEOF'",
        "[Unit]",
        "Description=Poseidon Agent Dashboard",
        f"After={config.gateway_service}.service",
        f"Wants={config.gateway_service}.service",
        "",
        "[Service]",
        "Type=simple",
        f"User={config.operator_user}",
        f"WorkingDirectory={config.dashboard_dir}",
        f"EnvironmentFile={config.dashboard_env_file}",
        "ExecStart=/usr/local/bin/bun apps/api/src/index.ts",
        "Restart=always",
        "RestartSec=5",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "UNITEOF",
        "systemctl daemon-reload",
        f"systemctl enable {_q(config.dashboard_service)} >/dev/null 2>&1",
    ]


def dashboard_env_lines(config: DeployConfig, cors_origins: str = LOCAL_DEV_ORIGINS) -> List[str]:
    """Rewrite the dashboard env file, copying the token from the gateway config on the target."""
    env_file = _q(config.dashboard_env_file)
    return [
        f"GW_TOKEN=\"$({gateway_token_read_probe(config)}\n)\"",
        'if [ -z "$GW_TOKEN" ]; then echo "gateway token missing from gateway config" >&2; exit 3; fi',
        f"EXISTING_CORS=\"$(grep '^CORS_ORIGINS=' {env_file} 2>/dev/null | cut -d= -f2- || true)\"",
        f"cat > {env_file} <<ENVEOF",
        f"PORT={int(config.dashboard_port)}",
        f"GATEWAY_URL=ws://127.0.0.1:{int(config.gateway_port)}",
        "GATEWAY_TOKEN=$GW_TOKEN",
        f"POSEIDON_STATIC_DIR={config.dashboard_dir}/apps/web/dist",
        f"OPENCLAW_SOURCE={config.identity}",
        f"CORS_ORIGINS=${{EXISTING_CORS:-{cors_origins}}}",
        "ENVEOF",
        f"chmod 600 {env_file}",
        f"chown {_q(config.operator_user)}:{_q(config.operator_user)} {env_file}",
    ]


_DASHBOARD_TOKEN_MATCH = '''python3 - {config_path} {env_path} <<'PY'
import json, sys
try:
    with open(sys.argv[1]) as fh:
        token = ((json.load(fh).get("gateway") or {{}}).get("auth") or {{}}).get("token") or ""
except (OSError, ValueError):
    token = ""
env_token = ""
try:
    with open(sys.argv[2]) as fh:
        for line in fh:
            if line.startswith("GATEWAY_TOKEN="):
                env_token = line.split("=", 1)[1].strip()
except OSError:
    pass
if not token or not env_token:
    print("missing")
else:
    print("match" if token == env_token else "mismatch")
PY'''


def dashboard_token_match_probe(config: DeployConfig) -> str:
    """Compare tokens on the target; only the verdict leaves the host."""
    return _DASHBOARD_TOKEN_MATCH.format(
        config_path=_q(config.gateway_config_path),
        env_path=_q(config.dashboard_env_file),
    )


def dashboard_token_sync_lines(config: DeployConfig) -> List[str]:
    env_file = _q(config.dashboard_env_file)
    return [
        f"GW_TOKEN=\"$({gateway_token_read_probe(config)}\n)\"",
        'if [ -z "$GW_TOKEN" ]; then echo "gateway token missing from gateway config" >&2; exit 3; fi',
        f"if grep -q '^GATEWAY_TOKEN=' {env_file}; then "
        f"sed -i \"s|^GATEWAY_TOKEN=.*|GATEWAY_TOKEN=$GW_TOKEN|\" {env_file}; "
        f"else echo \"GATEWAY_TOKEN=$GW_TOKEN\" >> {env_file}; fi",
        f"chmod 600 {env_file}",
    ]


def toolchain_lines() -> List[str]:
    return [
        "export HOME=/root",
        "if ! command -v bun >/dev/null; then",
        "  curl -fsSL https://bun.sh/install | bash",
        "  ln -sf /root/.bun/bin/bun /usr/local/bin/bun",
        "fi",
        "if ! command -v pnpm >/dev/null; then",
        "  bun install -g pnpm",
        '  ln -sf "$(bun pm bin -g)/pnpm" /usr/local/bin/pnpm',
        "fi",
    ]


def fqdn_probe() -> str:
    return (
        "tailscale status --self --json 2>/dev/null | python3 -c "
        "\"import json,sys; print(json.load(sys.stdin).get('Self',{}).get('DNSName','').rstrip('.'))\""
    )


def cors_update_lines(config: DeployConfig) -> List[str]:
    """Expects ``$TS_FQDN`` to be set by the preceding lines."""
    env_file = _q(config.dashboard_env_file)
    value = f"https://${{TS_FQDN}},{LOCAL_DEV_ORIGINS}"
    return [
        f"if grep -q '^CORS_ORIGINS=' {env_file}; then "
        f"sed -i \"s|^CORS_ORIGINS=.*|CORS_ORIGINS={value}|\" {env_file}; "
        f"else echo \"CORS_ORIGINS={value}\" >> {env_file}; fi",
        f"systemctl restart {_q(config.dashboard_service)}",
    ]


# ---------------------------------------------------------------------------
# Mesh overlay
# ---------------------------------------------------------------------------

def mesh_gateway_rule(config: DeployConfig) -> str:
    verb = "funnel" if config.mesh_mode == "funnel" else "serve"
    return f"tailscale {verb} --bg --https={MESH_GATEWAY_HTTPS_PORT} http://localhost:{int(config.gateway_port)}"


def mesh_dashboard_rule(config: DeployConfig) -> str:
    return f"tailscale serve --bg --https={MESH_DASHBOARD_HTTPS_PORT} http://localhost:{int(config.dashboard_port)}"


def mesh_rule_probe(port: int) -> str:
    return (
        f"if tailscale serve status 2>/dev/null | grep -Eq '(localhost|127\\.0\\.0\\.1):{int(port)}'; "
        "then echo yes; else echo no; fi"
    )


# ---------------------------------------------------------------------------
# Push-event listener
# ---------------------------------------------------------------------------

def update_settings(config: DeployConfig) -> List[Tuple[str, str]]:
    """Settings the update script reads, whether started by the listener or by ``upgrade``."""
    return [
        ("DASHBOARD_BRANCH", config.dashboard_branch),
        ("DASHBOARD_DIR", config.dashboard_dir),
        ("DASHBOARD_PORT", str(int(config.dashboard_port))),
        ("DASHBOARD_SERVICE", config.dashboard_service),
        ("DASHBOARD_ENV_FILE", config.dashboard_env_file),
        ("GATEWAY_PORT", str(int(config.gateway_port))),
        ("GATEWAY_SERVICE", config.gateway_service),
        ("GATEWAY_CONFIG", config.gateway_config_path),
        ("OPERATOR_USER", config.operator_user),
        ("WEBHOOK_BUILD_SCRIPT", config.webhook_update_script),
        ("WEBHOOK_LOCK_FILE", config.webhook_lock_file),
        ("UPDATE_PREVIOUS_FILE", config.update_previous_file),
    ]


def webhook_env_lines(config: DeployConfig) -> List[str]:
    """Rewrite the non-secret listener settings, keeping WEBHOOK_SECRET in place."""
    env_file = _q(config.webhook_env_file)
    return [
        f"mkdir -p {_q(config.webhook_dir)}",
        f"EXISTING_SECRET=\"$(grep '^WEBHOOK_SECRET=' {env_file} 2>/dev/null | cut -d= -f2- || true)\"",
        'if [ -z "$EXISTING_SECRET" ]; then echo "webhook secret missing from listener env" >&2; exit 3; fi',
        f"cat > {env_file} <<ENVEOF",
        f"WEBHOOK_PORT={int(config.webhook_port)}",
        "WEBHOOK_SECRET=$EXISTING_SECRET",
        *(f"{key}={value}" for key, value in update_settings(config)),
        "ENVEOF",
        f"chmod 600 {env_file}",
    ]


def webhook_secret_write_lines(config: DeployConfig, secret: str) -> List[str]:
    env_file = _q(config.webhook_env_file)
    return [
        f"mkdir -p {_q(config.webhook_dir)}",
        f"touch {env_file}",
        f"chmod 600 {env_file}",
        f"sed -i '/^WEBHOOK_SECRET=/d' {env_file}",
        f"echo WEBHOOK_SECRET={_q(secret)} >> {env_file}",
    ]


def webhook_unit_lines(config: DeployConfig) -> List[str]:
    service = webhook_service(config)
    return [
        f"cat > {_q(unit_path(service))} <<'UNITEOF'",
        "[Unit]",
        "Description=Poseidon push-event listener",
        "After=network-online.target",
        "",
        "[Service]",
        "Type=simple",
        f"EnvironmentFile={config.webhook_env_file}",
        f"ExecStart=/usr/bin/python3 {webhook_listener_path(config)}",
        "Restart=always",
        "RestartSec=5",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "UNITEOF",
        "systemctl daemon-reload",
        f"systemctl enable {_q(service)} >/dev/null 2>&1",
    ]


_UPDATE_SCRIPT = r'''#!/usr/bin/env bash
set -euo pipefail
# Installed by tusk-deploy. Pulls, builds and restarts the dashboard.
# With --rollback, returns to the commit that was live before the last update.

ENV_FILE="__ENV_FILE__"
if [[ -f "$ENV_FILE" ]]; then source "$ENV_FILE"; fi

LOCK_FILE="${WEBHOOK_LOCK_FILE:-/tmp/poseidon-update.lock}"
LOG_FILE="__LOG_FILE__"
POS_DIR="${DASHBOARD_DIR:-/opt/poseidon}"
POS_BRANCH="${DASHBOARD_BRANCH:-main}"
POS_ENV="${DASHBOARD_ENV_FILE:-/opt/poseidon.env}"
POS_SERVICE="${DASHBOARD_SERVICE:-poseidon}"
OC_USER="${OPERATOR_USER:-openclaw}"
OC_SERVICE="${GATEWAY_SERVICE:-openclaw}"
OC_CONFIG="${GATEWAY_CONFIG:-/home/openclaw/.openclaw/openclaw.json}"
PREV_FILE="${UPDATE_PREVIOUS_FILE:-__PREVIOUS_FILE__}"
ROLLBACK=0
if [[ "${1:-}" == "--rollback" ]]; then ROLLBACK=1; fi

log() { echo "[$(date -u +%Y-%m-%dT%H:%M:%SZ)] $*" | tee -a "$LOG_FILE"; }

# A build already holding the lock (listener or manual) wins.
if [[ "${TUSK_UPDATE_LOCKED:-}" != "1" ]]; then
    exec 200>"$LOCK_FILE"
    if ! flock -n 200; then
        log "ERROR: Another build is already running. Skipping."
        exit 1
    fi
fi

if [[ ! -d "$POS_DIR/.git" ]]; then
    log "ERROR: $POS_DIR is not a git checkout. Run tusk-deploy deploy first."
    exit 3
fi

export HOME=/root
cd "$POS_DIR"
GIT=(git -c safe.directory="$POS_DIR")
CURRENT="$("${GIT[@]}" rev-parse HEAD)"
if [[ "$ROLLBACK" == "1" ]]; then
    if [[ ! -s "$PREV_FILE" ]]; then
        log "ERROR: No previous version recorded in $PREV_FILE."
        exit 3
    fi
    WANT="$(cat "$PREV_FILE")"
    log "Rolling dashboard back to $WANT..."
else
    log "Starting dashboard update (branch: $POS_BRANCH)..."
    "${GIT[@]}" fetch origin
    WANT="origin/$POS_BRANCH"
fi
"${GIT[@]}" reset --hard "$WANT"
NEW="$("${GIT[@]}" rev-parse HEAD)"
# Only one previous version is kept; a no-op update leaves it alone.
if [[ "$NEW" != "$CURRENT" ]]; then
    mkdir -p "$(dirname "$PREV_FILE")"
    echo "$CURRENT" > "$PREV_FILE"
fi
echo "TUSK_NOTE:previous=$CURRENT"
echo "TUSK_NOTE:current=$NEW"

pnpm install --frozen-lockfile
pnpm --filter @poseidon/web build
chown -R "$OC_USER:$OC_USER" "$POS_DIR"

GW_TOKEN="$(grep '^GATEWAY_TOKEN=' "$POS_ENV" 2>/dev/null | cut -d= -f2- || true)"
if [[ -z "$GW_TOKEN" ]]; then
    log "WARNING: No GATEWAY_TOKEN in $POS_ENV, leaving env file untouched."
else
    CORS="$(grep '^CORS_ORIGINS=' "$POS_ENV" 2>/dev/null | cut -d= -f2- || true)"
    cat > "$POS_ENV" <<ENVEOF
PORT=${DASHBOARD_PORT:-18791}
GATEWAY_URL=ws://127.0.0.1:${GATEWAY_PORT:-18789}
GATEWAY_TOKEN=$GW_TOKEN
POSEIDON_STATIC_DIR=$POS_DIR/apps/web/dist
OPENCLAW_SOURCE=__IDENTITY__
CORS_ORIGINS=${CORS:-__LOCAL_ORIGINS__}
ENVEOF
    chmod 600 "$POS_ENV"
    chown "$OC_USER:$OC_USER" "$POS_ENV"
fi

systemctl daemon-reload
systemctl restart "$POS_SERVICE"

if command -v tailscale >/dev/null; then
    TS_FQDN="$(__FQDN_PROBE__ || true)"
    if [[ -n "$TS_FQDN" ]]; then
        sed -i "s|^CORS_ORIGINS=.*|CORS_ORIGINS=https://${TS_FQDN},__LOCAL_ORIGINS__|" "$POS_ENV"
        systemctl restart "$POS_SERVICE"
        python3 - "$OC_CONFIG" "$TS_FQDN" __GW_HTTPS_PORT__ <<'PY'
import json, sys
path, fqdn, port = sys.argv[1], sys.argv[2], sys.argv[3]
with open(path) as fh:
    cfg = json.load(fh)
origins = cfg.setdefault("gateway", {}).setdefault("controlUi", {}).setdefault("allowedOrigins", [])
changed = False
for origin in ("https://" + fqdn, "https://%s:%s" % (fqdn, port)):
    if origin not in origins:
        origins.append(origin)
        changed = True
if changed:
    with open(path, "w") as fh:
        json.dump(cfg, fh, indent=2)
PY
        chown "$OC_USER:$OC_USER" "$OC_CONFIG"
        log "Origins refreshed for https://${TS_FQDN}"
    fi
fi

log "Dashboard update complete."
'''


def update_script(config: DeployConfig) -> str:
    return (
        _UPDATE_SCRIPT.replace("__ENV_FILE__", config.webhook_env_file)
        .replace("__LOG_FILE__", UPDATE_LOG_FILE)
        .replace("__IDENTITY__", config.identity)
        .replace("__LOCAL_ORIGINS__", LOCAL_DEV_ORIGINS)
        .replace("__FQDN_PROBE__", fqdn_probe())
        .replace("__GW_HTTPS_PORT__", str(MESH_GATEWAY_HTTPS_PORT))
        .replace("__PREVIOUS_FILE__", config.update_previous_file)
    )


def upgrade_lines(config: DeployConfig, rollback: bool = False) -> List[str]:
    """Refresh the installed update script, then run it once under its own lock."""
    script = config.webhook_update_script
    run = f"bash {_q(script)}" + (" --rollback" if rollback else "")
    return [
        *install_file_lines(script, update_script(config), mode="0755"),
        *(f"export {key}={_q(value)}" for key, value in update_settings(config)),
        run,
    ]


def install_file_lines(path: str, content: str, mode: str = "0644") -> List[str]:
    """Write ``content`` verbatim to ``path`` on the target."""
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return [
        f"mkdir -p {_q(path.rsplit('/', 1)[0])}",
        f"echo '{encoded}' | base64 -d > {_q(path)}.tmp",
        f"chmod {mode} {_q(path)}.tmp",
        f"mv -f {_q(path)}.tmp {_q(path)}",
    ]
