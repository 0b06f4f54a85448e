"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    HOST: str = "0.0.0.0"
    PORT: int = 5050
    LOG_LEVEL: str = "INFO"
    TWILIO_AUTH_TOKEN: str = ""
    PROVIDER: str = "elevenlabs"
    ELEVENLABS_API_KEY: str = ""
    ELEVENLABS_AGENT_ID: str = ""
    ELEVENLABS_API_BASE: str = "https://api.elevenlabs.io"
    AGENT_AUDIO_TRANSPORT: str = "json"
    CREDENTIAL_TIMEOUT: float = 10.0
    DEFAULT_CALLER_NAME: str = "there"
    GREETING_TEMPLATE: str = "Hi {caller_name}! Thanks for calling. How can I help you today?"
    PROMPT_TEMPLATE: str = (
        "The caller's business name is {caller_name}. Their phone number is {phone_number}."
    )

    def render_greeting(self, caller_name: str, phone_number: str) -> str:
        """Fill GREETING_TEMPLATE for one caller."""
        return self.GREETING_TEMPLATE.format(caller_name=caller_name, phone_number=phone_number)

    def render_prompt(self, caller_name: str, phone_number: str) -> str:
        """Fill PROMPT_TEMPLATE for one caller."""
        return self.PROMPT_TEMPLATE.format(caller_name=caller_name, phone_number=phone_number)
