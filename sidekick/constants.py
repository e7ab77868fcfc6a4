"""String constants shared by the output modules."""

OK = "ok"
WARNING = "warning"
ALERT = "alert"
ERROR = "error"
CRITICAL = "critical"
EMERGENCY = "emergency"
NOTICE = "notice"
INFORMATIONAL = "informational"
DEBUG = "debug"
INFO = "info"
NONE = "none"

ALL = "all"
FIELDS = "fields"
TOTAL = "total"
REJECTED = "rejected"
ACCEPTED = "accepted"
OUTPUTS = "outputs"

RULE = "rule"
PRIORITY = "priority"
TIME = "time"
TEXT = "text"

DEFAULT_FOOTER = "https://github.com/falcosecurity/falcosidekick"
DEFAULT_ICON_URL = (
    "https://raw.githubusercontent.com/falcosecurity/falcosidekick/master/imgs/falcosidekick.png"
)

# Colors
PALE_CYAN = "#ccfff2"
YELLOW = "#ffc700"
RED = "#e20b0b"
LIGHT_BLUE = "#68c2ff"
LIGHT_CYAN = "#5bffb5"
ORANGE = "#ff5400"

KUBELESS = "Kubeless"
OPENFAAS = "OpenFaas"
FISSION = "Fission"
FALCO = "Falco"

UDP = "udp"
TCP = "tcp"