# /soporte/__init__.py
# Inicializa la aplicación Flask de la mesa de ayuda y sus extensiones (Application Factory).

import os
import logging
from flask import Flask
from dotenv import load_dotenv

import security

# Cargar variables de entorno desde el archivo .env
load_dotenv()


def configure_logging(app):
    """Un único handler a stderr con nivel configurable por LOG_LEVEL."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    if not any(getattr(h, '_soporte', False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        handler._soporte = True
        root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)


def create_app(test_config=None):
    """Crea y configura la instancia de la aplicación Flask."""
    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'clave_secreta_muy_segura_cambiar_en_produccion')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')
    # Seguridad cookies
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    app.config['SESSION_COOKIE_SECURE'] = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    # Mail (leer de .env si existen)
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', '587'))
    app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'true').lower() == 'true'
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER', 'no-reply@example.com')
    app.config['SECURITY_ISSUER'] = os.getenv('SECURITY_ISSUER', 'Soporte TI')

    # Asegurarse de que la carpeta 'instance' exista para la base de datos SQLite
    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        pass

    # Base de datos de usuarios, sesiones y auditoría
    if os.getenv('DATABASE_URL'):
        app.config['SECURITY_DATABASE_URI'] = os.getenv('DATABASE_URL')

    if test_config:
        app.config.update(test_config)

    configure_logging(app)

    # Login, 2FA, sesiones de servidor y auditoría
    security.init_app(app)

    # Registrar Blueprints (módulos de la aplicación)
    from .main import main as main_blueprint
    app.register_blueprint(main_blueprint)

    from .cli import register_commands
    register_commands(app)

    return app
