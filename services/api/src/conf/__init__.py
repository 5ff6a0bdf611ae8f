from pydantic import BaseModel

from utils import auth, env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class SchedulerConf(BaseModel):
    expiry_sweep_interval_minutes: int

    @property
    def expiry_sweep_enabled(self) -> bool:
        return self.expiry_sweep_interval_minutes > 0

class BiddingConf(BaseModel):
    cas_max_retries: int
    default_page_limit: int
    max_page_limit: int

#### Env Vars ####

## Auth ##

AUTH_JWT_SECRET = EnvVarSpec(id="AUTH_JWT_SECRET", is_optional=True, is_secret=True)
AUTH_OIDC_JWK_URL = EnvVarSpec(id="AUTH_OIDC_JWK_URL", is_optional=True)
AUTH_OIDC_AUDIENCE = EnvVarSpec(id="AUTH_OIDC_AUDIENCE", is_optional=True)
AUTH_OIDC_ISSUER = EnvVarSpec(id="AUTH_OIDC_ISSUER", is_optional=True)

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Scheduler ##

EXPIRY_SWEEP_INTERVAL_MINUTES = EnvVarSpec(
    id="EXPIRY_SWEEP_INTERVAL_MINUTES",
    default="0",
    parse=int,
    type=(int, ...),
)

## Bidding ##

CAS_MAX_RETRIES = EnvVarSpec(
    id="CAS_MAX_RETRIES",
    default="5",
    parse=int,
    type=(int, ...),
)

DEFAULT_PAGE_LIMIT = EnvVarSpec(
    id="DEFAULT_PAGE_LIMIT",
    default="10",
    parse=int,
    type=(int, ...),
)

MAX_PAGE_LIMIT = EnvVarSpec(
    id="MAX_PAGE_LIMIT",
    default="100",
    parse=int,
    type=(int, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    AUTH_JWT_SECRET,
    AUTH_OIDC_JWK_URL,
    AUTH_OIDC_AUDIENCE,
    AUTH_OIDC_ISSUER,
    ENVIRONMENT,
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    EXPIRY_SWEEP_INTERVAL_MINUTES,
    CAS_MAX_RETRIES,
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
]

def validate() -> bool:
    if not env.validate(VALIDATED_ENV_VARS):
        return False
    if not env.parse(AUTH_OIDC_JWK_URL) and not env.parse(AUTH_JWT_SECRET):
        logger.error("One of AUTH_OIDC_JWK_URL or AUTH_JWT_SECRET must be set")
        return False
    return True

#### Getters ####

def get_auth_config() -> auth.AuthClientConfig:
    """Get authentication configuration."""
    return auth.AuthClientConfig(
        jwk_url=env.parse(AUTH_OIDC_JWK_URL),
        audience=env.parse(AUTH_OIDC_AUDIENCE),
        issuer=env.parse(AUTH_OIDC_ISSUER),
        jwt_secret=env.parse(AUTH_JWT_SECRET),
    )

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(
        expiry_sweep_interval_minutes=max(0, env.parse(EXPIRY_SWEEP_INTERVAL_MINUTES)),
    )

def get_bidding_conf() -> BiddingConf:
    cas_max_retries = max(0, env.parse(CAS_MAX_RETRIES))
    max_page_limit = max(1, env.parse(MAX_PAGE_LIMIT))
    default_page_limit = max(1, min(env.parse(DEFAULT_PAGE_LIMIT), max_page_limit))

    return BiddingConf(
        cas_max_retries=cas_max_retries,
        default_page_limit=default_page_limit,
        max_page_limit=max_page_limit,
    )
