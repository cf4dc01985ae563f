from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Simulated execution costs
    fee_rate: float = Field(default=0.008, ge=0, le=0.5)
    slippage_rate: float = Field(default=0.0005, ge=0, le=0.5)
    execution_delay_seconds: float = Field(default=3.0, ge=0, le=60)

    # Handler cadences (seconds) used by the scheduler
    order_check_interval_seconds: int = Field(default=5, ge=1, le=3600)
    pressure_interval_seconds: int = Field(default=10, ge=1, le=3600)
    signal_scan_interval_seconds: int = Field(default=15, ge=1, le=3600)
    quote_refresh_interval_seconds: int = Field(default=10, ge=1, le=3600)
    autotrader_interval_seconds: int = Field(default=60, ge=5, le=3600)

    # Trading session
    timezone: str = "America/New_York"
    session_open_hour: int = Field(default=9, ge=0, le=23)
    session_open_minute: int = Field(default=30, ge=0, le=59)
    session_close_hour: int = Field(default=16, ge=0, le=23)
    session_close_minute: int = Field(default=0, ge=0, le=59)

    # Ledger
    paper_starting_cash: float = Field(default=100_000, ge=0, le=100_000_000)
    default_account_id: str = "default"
    ledger_sync_tolerance_pct: float = Field(default=1.0, ge=0, le=100)
    trade_record_retries: int = Field(default=3, ge=0, le=10)
    trade_record_retry_delay_seconds: float = Field(default=1.0, ge=0, le=30)

    # Advisor (LLM)
    ai_provider: Literal["auto", "openai", "ollama", "none"] = "auto"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: int = Field(default=60, ge=5, le=300)
    openai_max_output_tokens: int = Field(default=600, ge=64, le=4096)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = ""
    ollama_timeout_seconds: int = Field(default=120, ge=5, le=600)
    advisor_min_interval_seconds: float = Field(default=2.0, ge=0, le=60)

    # Quote providers
    quote_providers_csv: str = "yahoo,stored"
    quote_min_interval_seconds: float = Field(default=0.5, ge=0, le=30)
    quote_history_range: str = "5d"
    quote_history_interval: str = "1m"

    # Scoring
    signal_recent_bars: int = Field(default=30, ge=5, le=500)
    signal_baseline_bars: int = Field(default=240, ge=30, le=5000)
    signal_lookback_minutes: int = Field(default=60, ge=1, le=1440)
    signal_include_intelligence: bool = False
    sentiment_delay_seconds: float = Field(default=0.0, ge=0, le=30)
    watchlist_csv: str = "AAPL,MSFT,NVDA,TSLA,AMD,META,AMZN,GOOGL,PLTR,SOFI"

    # Auto-trader
    autotrader_config_path: Path = Path("config/autotrader.yaml")
    autotrader_capital_usd: float = Field(default=10_000, ge=0, le=100_000_000)
    autotrader_close_window_minutes: int = Field(default=10, ge=0, le=120)

    # Alerting
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "ledger_repair,spi_alert,order_error,settlement"

    # Service
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)
    scheduler_enabled: bool = True
    log_level: str = "INFO"
    log_file: Path | None = None
    db_path: Path = Path("data/flow_pressure.sqlite3")

    @model_validator(mode="after")
    def validate_session_window(self) -> "Settings":
        open_minutes = self.session_open_hour * 60 + self.session_open_minute
        close_minutes = self.session_close_hour * 60 + self.session_close_minute
        if close_minutes <= open_minutes:
            raise ValueError("Trading session must close after it opens.")
        return self

    @property
    def watchlist(self) -> list[str]:
        return [item.strip().upper() for item in self.watchlist_csv.split(",") if item.strip()]


settings = Settings()
