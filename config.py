"""
Configuration for the Library Inventory and Lending Manager
"""

import os
from urllib.parse import quote_plus
import dotenv
from sqlalchemy.pool import StaticPool
dotenv.load_dotenv()  # Load environment variables from .env file


def _int_env(name, default):
    return int(os.environ.get(name, default))


class Config:
    """Base configuration"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'supersecretkey'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Database settings (DATABASE_URL wins, then DB_* parts, then local SQLite)
    DATABASE_URL = os.environ.get('DATABASE_URL')
    MYSQL_HOST = os.environ.get('DB_HOST')
    MYSQL_PORT = _int_env('DB_PORT', 3306)
    MYSQL_USERNAME = os.environ.get('DB_USER')
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME')
    MYSQL_CHARSET = 'utf8mb4'
    SQLITE_FILE = os.environ.get('LIBRARY_DB_FILE', 'library.db')

    # SQLAlchemy settings
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
    }

    # Lending rules
    MAX_ACTIVE_LOANS_PER_BORROWER = _int_env('MAX_ACTIVE_LOANS_PER_BORROWER', 1)
    MIN_BORROWER_NAME_LENGTH = 2
    MIN_BORROWER_ID_LENGTH = 5

    # Accounts
    MIN_PASSWORD_LENGTH = _int_env('MIN_PASSWORD_LENGTH', 6)
    MIN_USER_NAME_LENGTH = 3
    ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL', 'admin@library.local')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'admin123')
    ADMIN_NAME = os.environ.get('ADMIN_NAME', 'Administrator')

    # Listing
    DEFAULT_PAGE_SIZE = _int_env('DEFAULT_PAGE_SIZE', 20)
    MAX_PAGE_SIZE = _int_env('MAX_PAGE_SIZE', 100)

    # Book sequence number assignment
    SEQUENCE_RETRY_ATTEMPTS = _int_env('SEQUENCE_RETRY_ATTEMPTS', 5)

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get the database URI for the library store."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if not (self.MYSQL_HOST and self.MYSQL_USERNAME and self.MYSQL_DATABASE):
            return f"sqlite:///{self.SQLITE_FILE}"

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"

    def get_engine_options(self, database_uri: str) -> dict:
        """Engine keyword arguments for the given URI."""
        if database_uri.startswith('sqlite'):
            return {'connect_args': {'check_same_thread': False}}
        return dict(self.SQLALCHEMY_ENGINE_OPTIONS)


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'
    MAX_ACTIVE_LOANS_PER_BORROWER = 1

    # Use in-memory SQLite for testing
    def get_database_uri(self) -> str:
        return 'sqlite:///:memory:'

    def get_engine_options(self, database_uri: str) -> dict:
        # One shared connection so every session sees the same in-memory database
        return {
            'connect_args': {'check_same_thread': False},
            'poolclass': StaticPool,
        }


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
