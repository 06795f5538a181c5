"""
Pigskin Pick Six - Configuration
================================
Configuration settings for different environments.
"""

import os
from datetime import timedelta

# Base directory of the application
BASE_DIR = os.path.abspath(os.path.dirname(__file__))


class Config:
    """Base configuration."""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(BASE_DIR, 'pickem.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)

    # League Settings
    LEAGUE_TIMEZONE = 'America/Chicago'
    SEASON_YEAR = 2025
    ENTRY_FEE = 20  # dollars
    PICKS_PER_WEEK = 6
    LOCKS_PER_WEEK = 1
    STATUS_REFRESH_INTERVAL_SECONDS = 300
    PASSWORD_RESET_TOKEN_HOURS = 2

    # CollegeFootballData API
    CFBD_API_KEY = os.environ.get('CFBD_API_KEY')

    # Resend (transactional email)
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER') or \
        'Pigskin Pick Six <admin@pigskinpicksix.com>'
    SITE_URL = os.environ.get('SITE_URL') or 'http://localhost:5000'

    # Feature flags
    LEADERBOARD_PAID_ONLY = False  # Hide unpaid users from standings


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False

    # Override these in production environment
    SECRET_KEY = os.environ.get('SECRET_KEY')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    LEADERBOARD_PAID_ONLY = os.environ.get('LEADERBOARD_PAID_ONLY', 'false').lower() == 'true'


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    STATUS_REFRESH_INTERVAL_SECONDS = 0
    RESEND_API_KEY = None
    CFBD_API_KEY = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
