"""Funciones de seguridad: hashing de contraseñas, manejo de JWT y chequeos de rol.

Se utiliza bcrypt vía passlib para almacenar contraseñas y PyJWT para tokens.
"""

from datetime import datetime, timedelta
from passlib.context import CryptContext
import jwt
from config import get_settings
from errors import AuthorizationError
from models import User, UserRole, is_staff

settings = get_settings()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)

ADMIN_ROLES = frozenset({UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})

# hash_password: Genera hash bcrypt de una contraseña en texto plano.
def hash_password(password: str) -> str:
    # Truncar password a 72 bytes para compatibilidad bcrypt
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.hash(password_bytes.decode('utf-8', errors='ignore'))

# verify_password: Verifica si la contraseña suministrada coincide con el hash.
def verify_password(password: str, password_hash: str) -> bool:
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.verify(password_bytes.decode('utf-8', errors='ignore'), password_hash)

# create_token: Crea un JWT con sujeto y rol, expirando en minutos configurados.
def create_token(sub: str, role: str):
    exp = datetime.utcnow() + timedelta(minutes=settings.jwt_exp_minutes)
    payload = {"sub": sub, "role": role, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

# decode_token: Decodifica el JWT y retorna payload o None si inválido/expirado.
def decode_token(token: str):
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None

# require_staff: Lanza AuthorizationError si el usuario no es moderador o admin.
def require_staff(user: User, action: str = 'this action'):
    if not is_staff(user.role):
        raise AuthorizationError(f"Only staff may perform {action}")

# require_admin: Igual que require_staff pero excluye a los moderadores.
def require_admin(user: User, action: str = 'this action'):
    if user.role not in ADMIN_ROLES:
        raise AuthorizationError(f"Only admins may perform {action}")
