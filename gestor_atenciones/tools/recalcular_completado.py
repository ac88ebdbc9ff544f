from __future__ import annotations

from sqlalchemy import func, select

from gestor_atenciones.atenciones import recalcular_todos
from gestor_atenciones.db import db_session, engine
from gestor_atenciones.models import AtencionDiaria
from gestor_atenciones.services import init_db


def _contar_completadas() -> int:
    with db_session() as s:
        return s.scalar(select(func.count(AtencionDiaria.id)).where(AtencionDiaria.completed.is_(True))) or 0


def main() -> None:
    # Asegura que las tablas existan en la DB del engine
    init_db()

    print("DB:", engine.url.database)

    antes = _contar_completadas()
    print(f"Atenciones completed (antes): {antes}")

    pacientes = recalcular_todos()

    despues = _contar_completadas()
    print(f"Atenciones completed (después): {despues}")
    print(f"Pacientes con todas sus atenciones completadas: {pacientes}")


if __name__ == "__main__":
    main()
