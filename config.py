"""Configuration for the OAuth MCP gateway."""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Server Configuration
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "3007"))
SERVER_URL = os.getenv("SERVER_URL", f"http://{SERVER_HOST}:{SERVER_PORT}").rstrip("/")
SERVER_NAME = "n8n-mcp-server"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"
GATEWAY_EXTENSION = "mcp_gateway"

# Security
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
COOKIE_SECURE = _env_bool("COOKIE_SECURE", "true")
ADMIN_COOKIE_NAME = "admin_session"

# Single operator identity
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

# Process-wide fallback backend (optional)
DEFAULT_BACKEND_HOST = os.getenv("DEFAULT_BACKEND_HOST", "")
DEFAULT_BACKEND_API_KEY = os.getenv("DEFAULT_BACKEND_API_KEY", "")

# Lifetimes (seconds)
ADMIN_SESSION_TTL = int(os.getenv("ADMIN_SESSION_TTL", str(24 * 3600)))
ADMIN_COOKIE_MAX_AGE = int(os.getenv("ADMIN_COOKIE_MAX_AGE", str(30 * 60)))
AUTHORIZATION_CODE_TTL = int(os.getenv("AUTHORIZATION_CODE_TTL", "600"))
ACCESS_TOKEN_TTL = int(os.getenv("ACCESS_TOKEN_TTL", str(24 * 3600)))
STANDALONE_TOKEN_TTL = int(os.getenv("STANDALONE_TOKEN_TTL", str(90 * 24 * 3600)))
PROTOCOL_SESSION_TTL = int(os.getenv("PROTOCOL_SESSION_TTL", str(24 * 3600)))
AUTO_REGISTERED_CLIENT_TTL = int(os.getenv("AUTO_REGISTERED_CLIENT_TTL", str(24 * 3600)))

# Timers (seconds)
BACKEND_TIMEOUT = float(os.getenv("BACKEND_TIMEOUT", "30"))
SSE_KEEPALIVE_INTERVAL = float(os.getenv("SSE_KEEPALIVE_INTERVAL", "30"))
SWEEP_INTERVAL = float(os.getenv("SWEEP_INTERVAL", "300"))

# Policy flags
ALLOW_CLIENT_AUTO_REGISTRATION = _env_bool("ALLOW_CLIENT_AUTO_REGISTRATION", "true")
REQUIRE_PKCE = _env_bool("REQUIRE_PKCE", "false")
ALLOW_UNAUTHENTICATED_DISCOVERY = _env_bool("ALLOW_UNAUTHENTICATED_DISCOVERY", "false")
STANDALONE_TOKENS_MAY_MUTATE = _env_bool("STANDALONE_TOKENS_MAY_MUTATE", "false")
# Answers prompts/list with the tool list for clients that never call tools/list.
COMPAT_PROMPTS_LIST_AS_TOOLS = _env_bool("COMPAT_PROMPTS_LIST_AS_TOOLS", "false")

DEFAULT_SCOPE = "mcp"
SCOPES_SUPPORTED = [DEFAULT_SCOPE]

# Plugin manifest
CONTACT_EMAIL = os.getenv("CONTACT_EMAIL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass
class Settings:
    """Runtime settings for one gateway instance.

    Defaults come from the environment; tests build their own instance.
    """
    server_url: str = SERVER_URL
    secret_key: str = SECRET_KEY
    cookie_secure: bool = COOKIE_SECURE
    admin_username: str = ADMIN_USERNAME
    admin_password: str = ADMIN_PASSWORD
    default_backend_host: str = DEFAULT_BACKEND_HOST
    default_backend_api_key: str = DEFAULT_BACKEND_API_KEY
    admin_session_ttl: int = ADMIN_SESSION_TTL
    admin_cookie_max_age: int = ADMIN_COOKIE_MAX_AGE
    authorization_code_ttl: int = AUTHORIZATION_CODE_TTL
    access_token_ttl: int = ACCESS_TOKEN_TTL
    standalone_token_ttl: int = STANDALONE_TOKEN_TTL
    protocol_session_ttl: int = PROTOCOL_SESSION_TTL
    auto_registered_client_ttl: int = AUTO_REGISTERED_CLIENT_TTL
    backend_timeout: float = BACKEND_TIMEOUT
    sse_keepalive_interval: float = SSE_KEEPALIVE_INTERVAL
    sweep_interval: float = SWEEP_INTERVAL
    allow_client_auto_registration: bool = ALLOW_CLIENT_AUTO_REGISTRATION
    require_pkce: bool = REQUIRE_PKCE
    allow_unauthenticated_discovery: bool = ALLOW_UNAUTHENTICATED_DISCOVERY
    standalone_tokens_may_mutate: bool = STANDALONE_TOKENS_MAY_MUTATE
    compat_prompts_list_as_tools: bool = COMPAT_PROMPTS_LIST_AS_TOOLS
    contact_email: str = CONTACT_EMAIL
    scopes_supported: list = field(default_factory=lambda: list(SCOPES_SUPPORTED))

    # OAuth Endpoints
    @property
    def authorization_endpoint(self) -> str:
        return f"{self.server_url}/oauth/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.server_url}/oauth/token"

    @property
    def registration_endpoint(self) -> str:
        return f"{self.server_url}/oauth/register"

    @property
    def discovery_url(self) -> str:
        return f"{self.server_url}/.well-known/oauth-authorization-server"

    @property
    def tools_url(self) -> str:
        return f"{self.server_url}/tools"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.server_url}/.well-known/oauth-protected-resource"

    def default_backend(self) -> Optional[tuple]:
        """Return ``(host, api_key)`` when both fallback values are set."""
        if self.default_backend_host and self.default_backend_api_key:
            return self.default_backend_host, self.default_backend_api_key
        return None
