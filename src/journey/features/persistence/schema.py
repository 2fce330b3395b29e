from __future__ import annotations

SESSIONS_TABLE_NAME = "sessions"
TOUCHPOINTS_TABLE_NAME = "touchpoints"
EVENTS_TABLE_NAME = "events"
CONVERSIONS_TABLE_NAME = "conversions"
LINE_ITEMS_TABLE_NAME = "conversion_line_items"
CAMPAIGNS_TABLE_NAME = "campaigns"
DAILY_METRICS_TABLE_NAME = "daily_metrics"
FUNNEL_STEPS_TABLE_NAME = "funnel_steps"

# Context captured on the session row. First-touch values are write-once.
SESSION_CONTEXT_COLUMNS: tuple[str, ...] = (
    "customer_id",
    "user_agent",
    "ip_address",
    "device_type",
    "browser",
    "os",
    "country",
    "timezone",
    "language",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "referrer",
    "landing_page",
    "fbclid",
    "gclid",
    "ttclid",
)

SESSIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {SESSIONS_TABLE_NAME} (
    session_id TEXT PRIMARY KEY,
    visitor_id TEXT NOT NULL,
    customer_id TEXT,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,

    user_agent TEXT,
    ip_address TEXT,
    device_type TEXT,
    browser TEXT,
    os TEXT,
    country TEXT,
    timezone TEXT,
    language TEXT,

    utm_source TEXT,
    utm_medium TEXT,
    utm_campaign TEXT,
    utm_term TEXT,
    utm_content TEXT,
    referrer TEXT,
    landing_page TEXT,

    fbclid TEXT,
    gclid TEXT,
    ttclid TEXT
);
"""

TOUCHPOINT_COLUMNS: tuple[str, ...] = (
    "touchpoint_id",
    "session_id",
    "ts",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "page_url",
    "page_title",
    "referrer",
    "fbclid",
    "gclid",
    "ttclid",
    "device_type",
    "browser",
    "created_at",
)

TOUCHPOINT_SEQUENCE_DDL = "CREATE SEQUENCE IF NOT EXISTS touchpoint_seq;"

TOUCHPOINTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {TOUCHPOINTS_TABLE_NAME} (
    touchpoint_id TEXT PRIMARY KEY,
    seq BIGINT NOT NULL DEFAULT nextval('touchpoint_seq'),
    session_id TEXT NOT NULL,
    ts TIMESTAMP NOT NULL,

    utm_source TEXT,
    utm_medium TEXT,
    utm_campaign TEXT,
    utm_term TEXT,
    utm_content TEXT,

    page_url TEXT,
    page_title TEXT,
    referrer TEXT,

    fbclid TEXT,
    gclid TEXT,
    ttclid TEXT,

    device_type TEXT,
    browser TEXT,

    created_at TIMESTAMP NOT NULL
);
"""

EVENT_COLUMNS: tuple[str, ...] = (
    "event_id",
    "session_id",
    "visitor_id",
    "event_name",
    "ts",
    "page_url",
    "page_title",
    "referrer",
    "element_id",
    "element_class",
    "element_text",
    "click_x",
    "click_y",
    "scroll_depth",
    "time_on_page",
    "load_time",
    "lcp_time",
    "fid_time",
    "payload_json",
    "created_at",
)

EVENTS_DDL = f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE_NAME} (
    event_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    visitor_id TEXT,

    event_name TEXT NOT NULL,
    ts TIMESTAMP NOT NULL,

    page_url TEXT,
    page_title TEXT,
    referrer TEXT,

    element_id TEXT,
    element_class TEXT,
    element_text TEXT,
    click_x INTEGER,
    click_y INTEGER,
    scroll_depth DOUBLE,
    time_on_page DOUBLE,

    load_time DOUBLE,
    lcp_time DOUBLE,
    fid_time DOUBLE,

    payload_json TEXT,
    created_at TIMESTAMP NOT NULL
);
"""

CONVERSIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {CONVERSIONS_TABLE_NAME} (
    order_id TEXT PRIMARY KEY,
    conversion_id TEXT NOT NULL,
    order_number TEXT,
    session_id TEXT,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,

    total_value DOUBLE NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USD',
    item_count INTEGER,
    customer_id TEXT,
    email TEXT,

    first_click_utm_source TEXT,
    first_click_utm_medium TEXT,
    first_click_utm_campaign TEXT,
    last_click_utm_source TEXT,
    last_click_utm_medium TEXT,
    last_click_utm_campaign TEXT,

    attribution_json TEXT,
    touchpoint_count INTEGER,
    days_to_purchase INTEGER,
    sessions_to_conversion INTEGER
);
"""

LINE_ITEMS_DDL = f"""
CREATE TABLE IF NOT EXISTS {LINE_ITEMS_TABLE_NAME} (
    conversion_id TEXT NOT NULL,
    line_no INTEGER NOT NULL,
    product_id TEXT,
    variant_id TEXT,
    sku TEXT,
    product_name TEXT,
    category TEXT,
    quantity INTEGER NOT NULL,
    price DOUBLE NOT NULL,
    PRIMARY KEY (conversion_id, line_no)
);
"""

CAMPAIGNS_DDL = f"""
CREATE TABLE IF NOT EXISTS {CAMPAIGNS_TABLE_NAME} (
    source TEXT NOT NULL,
    medium TEXT NOT NULL,
    campaign TEXT NOT NULL,
    name TEXT NOT NULL,

    impressions BIGINT NOT NULL DEFAULT 0,
    clicks BIGINT NOT NULL DEFAULT 0,
    sessions BIGINT NOT NULL DEFAULT 0,
    conversions BIGINT NOT NULL DEFAULT 0,
    revenue DOUBLE NOT NULL DEFAULT 0,
    spend DOUBLE NOT NULL DEFAULT 0,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    PRIMARY KEY (source, medium, campaign)
);
"""

DAILY_METRICS_DDL = f"""
CREATE TABLE IF NOT EXISTS {DAILY_METRICS_TABLE_NAME} (
    metric_date DATE PRIMARY KEY,

    sessions BIGINT NOT NULL DEFAULT 0,
    page_views BIGINT NOT NULL DEFAULT 0,
    conversions BIGINT NOT NULL DEFAULT 0,
    revenue DOUBLE NOT NULL DEFAULT 0,

    organic_sessions BIGINT NOT NULL DEFAULT 0,
    paid_sessions BIGINT NOT NULL DEFAULT 0,
    social_sessions BIGINT NOT NULL DEFAULT 0,
    email_sessions BIGINT NOT NULL DEFAULT 0,
    referral_sessions BIGINT NOT NULL DEFAULT 0,
    direct_sessions BIGINT NOT NULL DEFAULT 0,

    updated_at TIMESTAMP NOT NULL
);
"""

FUNNEL_STEPS_DDL = f"""
CREATE TABLE IF NOT EXISTS {FUNNEL_STEPS_TABLE_NAME} (
    name TEXT NOT NULL,
    step_order INTEGER NOT NULL,
    event_pattern TEXT NOT NULL,

    total_sessions BIGINT NOT NULL DEFAULT 0,
    completed_sessions BIGINT NOT NULL DEFAULT 0,
    dropoff_rate DOUBLE,

    refreshed_at TIMESTAMP NOT NULL,
    PRIMARY KEY (name, step_order)
);
"""

ALL_DDL = [
    SESSIONS_DDL,
    TOUCHPOINT_SEQUENCE_DDL,
    TOUCHPOINTS_DDL,
    EVENTS_DDL,
    CONVERSIONS_DDL,
    LINE_ITEMS_DDL,
    CAMPAIGNS_DDL,
    DAILY_METRICS_DDL,
    FUNNEL_STEPS_DDL,
]

# Optional but helpful for query speed
INDEXES = [
    f"CREATE INDEX IF NOT EXISTS idx_sessions_visitor_id ON {SESSIONS_TABLE_NAME}(visitor_id);",
    f"CREATE INDEX IF NOT EXISTS idx_touchpoints_session_id "
    f"ON {TOUCHPOINTS_TABLE_NAME}(session_id);",
    f"CREATE INDEX IF NOT EXISTS idx_events_event_name ON {EVENTS_TABLE_NAME}(event_name);",
    f"CREATE INDEX IF NOT EXISTS idx_events_ts ON {EVENTS_TABLE_NAME}(ts);",
]


def create_schema(conn) -> None:
    """
    Create tables/indexes. No migrations. Safe to call on every open.
    """
    for ddl in ALL_DDL:
        conn.execute(ddl)
    for ddl in INDEXES:
        conn.execute(ddl)
