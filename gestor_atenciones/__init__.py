"""
Backend del gestor de atenciones diarias e informes.

Estructura:
- config.py      : configuración explícita (.env / entorno)
- db.py          : engine y sesiones SQLAlchemy
- models.py      : modelos ORM y enums
- services.py    : CRUD de pacientes, doctores e items
- atenciones.py  : motor de atenciones (resolución, combos, duplicados, lote, estados, completado)
- importacion.py : lectura de la planilla diaria (.xlsx)
- correo.py      : envío SMTP de informes y fuente de archivos
- seed.py        : datos iniciales (doctores, estudios, combo)
- cli.py         : operaciones por línea de comandos
"""
