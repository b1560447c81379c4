from decouple import config

REQUEST_TIMEOUT = config("PANELSYNC_REQUEST_TIMEOUT", cast=int, default=10)
VERIFY_SSL = config("PANELSYNC_VERIFY_SSL", cast=bool, default=False)

# total create attempts per record: base name plus base_1 .. base_(N-1)
USERNAME_ATTEMPTS = config("PANELSYNC_USERNAME_ATTEMPTS", cast=int, default=10)

SCHEMA_PROBE_ENABLED = config("PANELSYNC_SCHEMA_PROBE", cast=bool, default=True)

LOG_LEVEL = config("PANELSYNC_LOG_LEVEL", default="INFO")

PASSWORD_ENVIRON_NAME = "PANELSYNC_PASSWORD"

DEFAULT_SHADOWSOCKS_METHOD = config("PANELSYNC_SHADOWSOCKS_METHOD", default="chacha20-ietf-poly1305")

PASARGUARD_EXPORT_FILENAME = "pasarguard_users_data.json"
XUI_EXPORT_FILENAME = "3xui_users_data.json"
XUI_INBOUNDS_FILENAME = "3xui_inbounds_data.json"
