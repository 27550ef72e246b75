# Configuration document location
CONFIG_PATH_ENV_VAR = "REPORT_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config/reports.json"

# Output formats
ALLOWED_FORMATS = ("json", "csv", "html")
DEFAULT_FORMATS = ["json"]
CONTENT_TYPES = {
    "json": "application/json; charset=utf-8",
    "csv": "text/csv; charset=utf-8",
    "html": "text/html; charset=utf-8",
}

# UTC suffix appended to every blob name, e.g. USERS_20250725_100000.json
BLOB_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
BLOB_ACCOUNT_URL = "https://{account}.blob.core.windows.net"

# Internal bookkeeping column carried by rows of partitioned reports
PARTITION_KEY_FIELD = "__partitionKey"

# The privileged role report predates the flat layout and renders one HTML
# table per role
LEGACY_ROLE_REPORT_KEY = "PRIVILEGEDROLES"
LEGACY_ROLE_GROUP_COLUMN = "RoleName"

# Directory (Graph-style) collector
GRAPH_TOKEN_ENV_VAR = "GRAPH_ACCESS_TOKEN"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_PAGE_SIZE = 999
GRAPH_CONNECTION_TIMEOUT = 60

# SKU friendly-name reference data
SKU_MAPPING_URL = (
    "https://download.microsoft.com/download/e/3/e/"
    "e3e9faf2-f28b-490a-9ada-c6089a1fc5b0/"
    "Product%20names%20and%20service%20plan%20identifiers%20for%20licensing.csv"
)
SKU_CACHE_PATH = "/tmp/governance-exporter/sku-mapping.csv"
SKU_CACHE_TTL_HOURS = 24
SKU_DOWNLOAD_TIMEOUT = 30
SKU_PRIMARY_ID_COLUMN = "GUID"
SKU_ALTERNATE_ID_COLUMN = "String_Id"
SKU_DISPLAY_NAME_COLUMN = "Product_Display_Name"
