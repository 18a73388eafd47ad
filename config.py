"""
H2 Debug Client configuration
"""

# === Proxy (HTTP CONNECT) ===
PROXY_HOST = "localhost"
PROXY_PORT = 4433

# === Target ===
TARGET_HOST = "www.google.com"
TARGET_PORT = 443
REQUEST_PATH = "/"

# === TLS ===
# Disabling verification is for debugging intercepting proxies only
TLS_VERIFY = True
# Also offer http/1.1 in ALPN (the client still requires h2)
OFFER_HTTP1 = False

# === Timeouts (seconds) ===
CONNECT_TIMEOUT = 7.0
TLS_TIMEOUT = 7.0
READ_TIMEOUT = 10.0
TOTAL_TIMEOUT = 30.0

# === Batch mode ===
MAX_CONCURRENT = 10

# === Wire limits ===
READ_CHUNK_SIZE = 64 * 1024
MAX_CONNECT_HEADER_BYTES = 64 * 1024

# === Display ===
BODY_PREVIEW_CHARS = 500

# === User Agent ===
USER_AGENT = "h2-debug-client"
