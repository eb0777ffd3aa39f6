"""
Portal web configuration. Discord application values come from env.
No secrets in this file; the Discord app is a public client (PKCE, no client_secret).
"""
import os

# Discord application id (OAuth2 client_id)
DISCORD_CLIENT_ID = os.environ.get("DISCORD_CLIENT_ID", "")

# Callback URL registered in the Discord developer portal
DISCORD_REDIRECT_URI = os.environ.get("DISCORD_REDIRECT_URI", "http://127.0.0.1:8000/auth/callback")

# Space-joined scope list
DISCORD_SCOPES = os.environ.get("DISCORD_SCOPES", "identify email")

# Browser redirect target for login
DISCORD_AUTHORIZE_URL = os.environ.get("DISCORD_AUTHORIZE_URL", "https://discord.com/oauth2/authorize")

# REST API base: /oauth2/token and /users/@me live under it
DISCORD_API_ENDPOINT = os.environ.get("DISCORD_API_ENDPOINT", "https://discord.com/api/v10").rstrip("/")

# Avatar images
DISCORD_CDN_ENDPOINT = os.environ.get("DISCORD_CDN_ENDPOINT", "https://cdn.discordapp.com").rstrip("/")

# Pending authorization (verifier + state) lifetime in seconds (10 minutes)
PENDING_AUTH_TTL_SECONDS = 600

# Access token is treated as unusable this many seconds before it really expires
TOKEN_SAFETY_MARGIN_SECONDS = 300

# Timeout for calls to Discord (token exchange, /users/@me)
HTTP_TIMEOUT_SECONDS = float(os.environ.get("PORTAL_HTTP_TIMEOUT", "10.0"))

# Delay before the callback page navigates back home after a successful login
SUCCESS_REDIRECT_DELAY_SECONDS = 2

# SQLite for development: credential records and user profiles
DATABASE_URL = os.environ.get("PORTAL_DATABASE_URL", "sqlite:///./portal.db")

# Cookie that identifies one browser's storage scope
SCOPE_COOKIE_NAME = "portal_scope"
SCOPE_COOKIE_MAX_AGE = 60 * 60 * 24 * 365

# Browser scopes whose service and login session stay in memory (least recently used evicted first)
MAX_CACHED_SCOPES = int(os.environ.get("PORTAL_MAX_CACHED_SCOPES", "1024"))
