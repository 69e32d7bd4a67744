import os


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-prod')

    # Auth
    JWT_SECRET = os.getenv('JWT_SECRET', SECRET_KEY)
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRES_DAYS = int(os.getenv('JWT_EXPIRES_DAYS', '7'))

    # Database
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///speakup.db')
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Redis (pub/sub mirror and Socket.IO message queue); empty disables both
    REDIS_URL = os.getenv('REDIS_URL', '')

    CLIENT_ORIGIN = os.getenv('CLIENT_ORIGIN', 'http://localhost:3000')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Group Discussion rooms
    GD_MIN_PARTICIPANTS = int(os.getenv('GD_MIN_PARTICIPANTS', '2'))
    GD_MAX_PARTICIPANTS = int(os.getenv('GD_MAX_PARTICIPANTS', '10'))
    GD_DEFAULT_PARTICIPANTS = int(os.getenv('GD_DEFAULT_PARTICIPANTS', '5'))
    GD_DEFAULT_DURATION_SECONDS = int(os.getenv('GD_DEFAULT_DURATION_SECONDS', '600'))
    GD_MIN_DURATION_SECONDS = int(os.getenv('GD_MIN_DURATION_SECONDS', '60'))
    GD_PREP_SECONDS = int(os.getenv('GD_PREP_SECONDS', '60'))
    GD_COUNTDOWN_SECONDS = int(os.getenv('GD_COUNTDOWN_SECONDS', '10'))
    GD_GLOBAL_CAPACITY = int(os.getenv('GD_GLOBAL_CAPACITY', '6'))

    # Room ticker
    ROOM_TICK_SECONDS = float(os.getenv('ROOM_TICK_SECONDS', '1.0'))
    ROOM_TICKER_ENABLED = os.getenv('ROOM_TICKER_ENABLED', 'true').lower() == 'true'
    OPTIMISTIC_RETRIES = int(os.getenv('OPTIMISTIC_RETRIES', '3'))


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'testing-secret'
    JWT_SECRET = 'testing-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    REDIS_URL = ''
    ROOM_TICKER_ENABLED = False


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
