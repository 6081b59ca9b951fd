import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

DEFAULT_BASE_URL = "https://nfe.fazenda.mg.gov.br/nfe2/services"

# service names published by SEFAZ MG
SERVICE_NAMES = {
    "nfeInutilizacao": "NFeInutilizacao4",
    "nfeConsultaProtocolo": "NFeConsultaProtocolo4",
    "nfeStatusServico": "NFeStatusServico4",
    "nfeConsultaCadastro": "CadConsultaCadastro4",
    "recepcaoEvento": "NFeRecepcaoEvento4",
    "nfeAutorizacao": "NFeAutorizacao4",
    "nfeRetAutorizacao": "NFeRetAutorizacao4",
}


def _env_bool(name: str, default: Optional[bool]) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def build_endpoints(base_url: str) -> Dict[str, str]:
    base_url = base_url.rstrip("/")
    return {name: f"{base_url}/{service}" for name, service in SERVICE_NAMES.items()}


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_url: str = "sqlite:///./nfe_monitor.db"
    base_url: str = DEFAULT_BASE_URL
    status_url: Optional[str] = None
    simulated_override: Optional[bool] = None
    check_interval_seconds: float = 300.0
    http_timeout_seconds: float = 15.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    client_cert: Optional[str] = None
    client_key: Optional[str] = None
    api_token: Optional[str] = None
    api_key: Optional[str] = None
    xml_export_dir: str = "./xml_files"
    monitor_autostart: bool = True
    log_level: str = "INFO"
    endpoints: Dict[str, str] = field(default_factory=lambda: build_endpoints(DEFAULT_BASE_URL))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def simulated(self) -> bool:
        if self.simulated_override is not None:
            return self.simulated_override
        return not self.is_production

    @property
    def resolved_status_url(self) -> str:
        return self.status_url or self.endpoints["nfeStatusServico"]


def load_settings() -> Settings:
    base_url = os.getenv("SEFAZ_BASE_URL", DEFAULT_BASE_URL)
    return Settings(
        environment=os.getenv("ENVIRONMENT", "development"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./nfe_monitor.db"),
        base_url=base_url,
        status_url=os.getenv("SEFAZ_STATUS_URL") or None,
        simulated_override=_env_bool("SEFAZ_SIMULATED", None),
        check_interval_seconds=float(os.getenv("STATUS_CHECK_INTERVAL_SECONDS", "300")),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
        max_retries=int(os.getenv("HTTP_MAX_RETRIES", "3")),
        retry_delay_seconds=float(os.getenv("HTTP_RETRY_DELAY_SECONDS", "1")),
        verify_tls=_env_bool("SEFAZ_VERIFY_TLS", True),
        ca_bundle=os.getenv("SEFAZ_CA_BUNDLE") or None,
        client_cert=os.getenv("SEFAZ_CLIENT_CERT") or None,
        client_key=os.getenv("SEFAZ_CLIENT_KEY") or None,
        api_token=os.getenv("SEFAZ_API_TOKEN") or None,
        api_key=os.getenv("SEFAZ_API_KEY") or None,
        xml_export_dir=os.getenv("XML_EXPORT_DIR", "./xml_files"),
        monitor_autostart=_env_bool("MONITOR_AUTOSTART", True),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        endpoints=build_endpoints(base_url),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
