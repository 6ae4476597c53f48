"""
Configuration settings for the Sophia application
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    FLASK_ENV = os.getenv('FLASK_ENV', 'production')
    DEBUG = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    ENV = os.getenv('ENV', 'production')  # For environment detection
    APP_VERSION = os.getenv('APP_VERSION', '1.0.0')

    # Admin session configuration
    SESSION_SECRET = os.getenv('SESSION_SECRET') or SECRET_KEY
    SESSION_COOKIE = 'sophia_session'
    SESSION_MAX_AGE = int(os.getenv('SESSION_MAX_AGE', str(24 * 60 * 60)))  # 24 hours
    ADMIN_ACCESS_CODE = os.getenv('ADMIN_ACCESS_CODE')

    # Supabase Configuration
    SUPABASE_URL = os.getenv('SUPABASE_URL')
    SUPABASE_SERVICE_ROLE_KEY = os.getenv('SUPABASE_SERVICE_ROLE_KEY')

    # OpenAI Configuration
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
    OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
    OPENAI_TIMEOUT = float(os.getenv('OPENAI_TIMEOUT', '3'))  # seconds

    # Twilio Configuration (WhatsApp)
    TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN')
    TWILIO_API_KEY_SID = os.getenv('TWILIO_API_KEY_SID')
    TWILIO_API_KEY_SECRET = os.getenv('TWILIO_API_KEY_SECRET')
    TWILIO_WHATSAPP_NUMBER = os.getenv('TWILIO_WHATSAPP_NUMBER')

    # Telegram Configuration
    TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN')
    TELEGRAM_WEBHOOK_SECRET = os.getenv('TELEGRAM_WEBHOOK_SECRET', 'default-secret-token')

    # Chatbase Configuration (admin testing console)
    CHATBASE_AGENT_ID = os.getenv('CHATBASE_AGENT_ID') or os.getenv('CHATBASE_BOT_ID')
    CHATBASE_API_URL = os.getenv('CHATBASE_API_URL', 'https://www.chatbase.co/api/v1/chat')

    # Redis Configuration (rate limiting)
    REDIS_URL = os.getenv('REDIS_URL')

    # Local business timezone, used for "today" boundaries
    TIMEZONE = os.getenv('TIMEZONE', 'Europe/Nicosia')

    # Webhook processing
    PROCESS_WEBHOOKS_INLINE = os.getenv('PROCESS_WEBHOOKS_INLINE', 'False').lower() == 'true'
    WEBHOOK_WORKERS = int(os.getenv('WEBHOOK_WORKERS', '4'))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Application Configuration
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max request size

    @classmethod
    def validate_config(cls):
        """Validate that required configuration is present"""
        required = {
            'SUPABASE_URL': cls.SUPABASE_URL,
            'SUPABASE_SERVICE_ROLE_KEY': cls.SUPABASE_SERVICE_ROLE_KEY,
            'OPENAI_API_KEY': cls.OPENAI_API_KEY,
            'TWILIO_ACCOUNT_SID': cls.TWILIO_ACCOUNT_SID,
            'TWILIO_WHATSAPP_NUMBER': cls.TWILIO_WHATSAPP_NUMBER,
        }
        missing_vars = [name for name, value in required.items() if not value]

        if not (cls.TWILIO_API_KEY_SID or cls.TWILIO_AUTH_TOKEN):
            missing_vars.append('TWILIO_AUTH_TOKEN (or TWILIO_API_KEY_SID)')

        if missing_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")

        return True

class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    FLASK_ENV = 'development'

class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    FLASK_ENV = 'production'

class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True
    PROCESS_WEBHOOKS_INLINE = True

# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
