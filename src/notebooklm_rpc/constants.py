"""
Wire constants for the NotebookLM batchexecute protocol.

Single home for the opaque identifiers, framing markers, cookie names and
numeric codes that the codec, transport and credential layers share. RPC
identifiers are treated as configuration: they are whatever the web app's
JavaScript currently sends, and nothing in this package depends on their
meaning beyond routing a payload to the right decoder.
"""

# =============================================================================
# Endpoints
# =============================================================================
BASE_URL = "https://notebooklm.google.com"
BATCHEXECUTE_PATH = "/_/LabsTailwindUi/data/batchexecute"
# Streaming answers use a different endpoint with gRPC-style naming
QUERY_PATH = (
    "/_/LabsTailwindUi/data/"
    "google.internal.labs.tailwind.orchestration.v1.LabsTailwindOrchestrationService"
    "/GenerateFreeFormStreamed"
)
LOGIN_DOMAIN = "accounts.google.com"
DEFAULT_BUILD_LABEL = "boq_labs-tailwind-frontend_20260120.08_p0"
DEFAULT_LOCALE = "en"

# =============================================================================
# Framing and envelope markers
# =============================================================================
XSSI_PREFIX = ")]}'"
RESPONSE_MARKER = "wrb.fr"
GENERIC_TAG = "generic"

# Envelope tuple positions: [marker, rpc_id, payload, ?, ?, error_codes, error_tag]
ENVELOPE_MIN_LENGTH = 3
ENVELOPE_PAYLOAD_INDEX = 2
ENVELOPE_ERROR_INDEX = 5

# Reserved sentinel: the gateway rejected our credentials
RPC_ERROR_AUTH = 16

# =============================================================================
# Streaming answers
# =============================================================================
# Fragments at or below this length are control noise, not content
MIN_ANSWER_LENGTH = 20

ANSWER_TYPE_ANSWER = 1  # any other type code is a thinking fragment

# History entries are tagged by speaker: [text, null, role]
CHAT_ROLE_USER = 1
CHAT_ROLE_ASSISTANT = 2

# =============================================================================
# Cookies and page markers
# =============================================================================
REQUIRED_COOKIES = ("SID", "HSID", "SSID", "APISID", "SAPISID")

ESSENTIAL_COOKIES = frozenset({
    "SID", "HSID", "SSID", "APISID", "SAPISID",
    "__Secure-1PSID", "__Secure-3PSID",
    "__Secure-1PAPISID", "__Secure-3PAPISID",
    "OSID", "__Secure-OSID",
    "__Secure-1PSIDTS", "__Secure-3PSIDTS",
    "SIDCC", "__Secure-1PSIDCC", "__Secure-3PSIDCC",
})

CSRF_PATTERNS = (
    r'"SNlM0e":"([^"]+)"',
    r'at=([^&"]+)',
    r'"FdrFJe":"([^"]+)"',
)
SESSION_ID_PATTERNS = (
    r'"FdrFJe":"([^"]+)"',
    r'f\.sid=(\d+)',
)
BUILD_LABEL_PATTERN = r'"cfb2h":"([^"]+)"'

# =============================================================================
# HTTP
# =============================================================================
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)

# Page fetch must look like a top-level browser navigation
PAGE_FETCH_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

QUERY_EXTRA_HEADERS = {
    "x-goog-ext-353267353-jspb": "[null,null,null,282611]",
    "priority": "u=1, i",
}

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
AUTH_STATUSES = frozenset({401, 403})

# =============================================================================
# RPC identifiers
# =============================================================================
RPC_LIST_NOTEBOOKS = "wXbhsf"
RPC_GET_NOTEBOOK = "rLM1Ne"
RPC_CREATE_NOTEBOOK = "CCqFvf"
RPC_RENAME_NOTEBOOK = "s0tc2d"
RPC_DELETE_NOTEBOOK = "WWINqb"
RPC_ADD_SOURCE = "izAoDd"

# RPC ID to method name mapping for debug logging
RPC_NAMES = {
    RPC_LIST_NOTEBOOKS: "list_notebooks",
    RPC_GET_NOTEBOOK: "get_notebook",
    RPC_CREATE_NOTEBOOK: "create_notebook",
    RPC_RENAME_NOTEBOOK: "rename_notebook",
    RPC_DELETE_NOTEBOOK: "delete_notebook",
    RPC_ADD_SOURCE: "add_source",
}

# =============================================================================
# Ownership (notebook metadata position 0)
# =============================================================================
OWNERSHIP_MINE = 1
