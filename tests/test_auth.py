from datetime import datetime, timedelta, timezone

from jose import jwt

from gestor_atenciones.auth_security import JWT_ALG, emitir_token, usuario_id_del_token
from gestor_atenciones.auth_service import autenticar, crear_usuario
from gestor_atenciones.config import cargar_configuracion


def test_token_carries_user_claims():
    crear_usuario("Tecnico", "4321", "technician")
    u = autenticar("tecnico", "4321")
    token = emitir_token(u)

    claims = jwt.get_unverified_claims(token)
    assert claims["sub"] == u.id
    assert claims["username"] == "tecnico"
    assert claims["role"] == "technician"
    assert usuario_id_del_token(token) == u.id
    assert usuario_id_del_token(f'"{token}"') == u.id


def test_foreign_or_expired_tokens_are_rejected():
    ahora = int(datetime.now(timezone.utc).timestamp())
    ajeno = jwt.encode({"sub": "x", "exp": ahora + 60}, "otro-secreto", algorithm=JWT_ALG)
    assert usuario_id_del_token(ajeno) is None

    secreto = cargar_configuracion().jwt_secret
    vencido = jwt.encode(
        {"sub": "x", "exp": int((datetime.now(timezone.utc) - timedelta(minutes=5)).timestamp())},
        secreto,
        algorithm=JWT_ALG,
    )
    assert usuario_id_del_token(vencido) is None
    assert usuario_id_del_token("no-es-un-jwt") is None


def test_wrong_password_does_not_authenticate():
    crear_usuario("admin", "123456", "admin")
    assert autenticar("admin", "000000") is None
    assert autenticar("nadie", "123456") is None
