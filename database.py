"""Módulo de acceso a la base de datos de salas.

Define el motor compartido, la creación del esquema y la sesión por petición.
En SQLite se activan las claves foráneas y se amplía la espera por bloqueo,
de modo que los UPDATE condicionales concurrentes (reclamo de plazas,
movimientos de saldo) esperan su turno en lugar de fallar al instante.
"""

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from config import get_settings
import models  # noqa: F401  registra las tablas en SQLModel.metadata

settings = get_settings()
IS_SQLITE = settings.database_url.startswith('sqlite')

# SQLite necesita compartir conexiones entre hilos del servidor.
connect_args = {'check_same_thread': False, 'timeout': 30} if IS_SQLITE else {}
engine = create_engine(settings.database_url, echo=False, connect_args=connect_args)

if IS_SQLITE:
    @event.listens_for(engine, 'connect')
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

# init_db: Crea las tablas de salas, cuentas y auditoría si no existen.
def init_db():
    SQLModel.metadata.create_all(engine)

# reset_db: Borra y recrea el esquema completo (entornos de prueba).
def reset_db():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)

class DBSession:
    """Context manager para manejar sesiones.

    Los servicios confirman sus propios cambios; al salir del contexto se hace
    rollback si hubo excepción y la sesión se cierra siempre.
    """
    def __enter__(self):
        self.session = Session(engine)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
