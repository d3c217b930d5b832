"""
Project constants definitions
"""

# ============================================================
# Default Values
# ============================================================

DEFAULT_SSH_PORT = 22
DEFAULT_DB_PORT = 3306
DEFAULT_LOCAL_HOST = "127.0.0.1"
DEFAULT_SSH_KEY_PATH = "~/.ssh/id_rsa"
KNOWN_HOSTS_PATH = "~/.ssh/known_hosts"

# ============================================================
# Forwarding
# ============================================================

FORWARD_CHUNK_SIZE = 32 * 1024
LISTEN_BACKLOG = 128
ACCEPT_POLL_INTERVAL = 1.0
THREAD_JOIN_TIMEOUT = 2.0

# ============================================================
# Session Manager
# ============================================================

SESSION_MANAGER_PLUGIN = "session-manager-plugin"
SSM_START_SESSION_OPERATION = "StartSession"
SSM_SSH_DOCUMENT = "AWS-StartSSHSession"
SSM_REMOTE_PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"
PROCESS_KILL_TIMEOUT = 5.0

# ============================================================
# Configuration
# ============================================================

ENV_PREFIX = "DBTUNNEL_"
BROKER_BLOCK = "ssm_session_manager"
DIRECT_BLOCK = "port_forward"
SOCKS_PROXY_PATTERN = r"^socks5h?://.*:\d+$"

# ============================================================
# Logging
# ============================================================

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FILE_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"
# Third-party loggers held at WARNING or quieter
NOISY_LOGGERS = ("paramiko", "botocore", "boto3", "urllib3", "s3transfer")
