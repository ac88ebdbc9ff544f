from __future__ import annotations

import argparse
from pathlib import Path

from .atenciones import crear_atenciones_lote, recalcular_todos, resumen_estados
from .config import cargar_configuracion
from .errores import ErrorDominio
from .importacion import leer_planilla
from .logging_config import setup_logging
from .seed import seed_base
from .services import crear_paciente, init_db, lista_doctores_flat, lista_items_flat, lista_pacientes_flat

_ETIQUETAS = {"sent": "enviado", "pending": "pendiente por enviar", "not_sent": "no enviado"}


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("DB inicializada y seed completado.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctores":
        for d in lista_doctores_flat():
            print(f"{d['id']} | {d['full_name']} | {d['cyclhos_name']}")
    elif args.entity == "pacientes":
        for p in lista_pacientes_flat():
            print(f"{p['id']} | {p['fid_number']} | {p['lastname']} {p['name']} | {p['contact_info']['email'] or '-'}")
    elif args.entity == "items":
        for i in lista_items_flat():
            combo = f" (combo: {', '.join(s['cyclhos_name'] for s in i['sub_items_detail'])})" if i["sub_items"] else ""
            print(f"{i['item_id']} | {i['cyclhos_name']} | {i['category']}{combo}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    p = crear_paciente(args.fid_number, args.nombre, args.apellido, args.email, args.telefono)
    print(f"Paciente creado: {p['id']}")


def cmd_import_excel(args: argparse.Namespace) -> None:
    solicitudes = leer_planilla(Path(args.archivo).read_bytes())
    resultado = crear_atenciones_lote(solicitudes)
    print(f"Atenciones creadas/vinculadas: {resultado.created_count} | errores: {resultado.errors_count}")
    for e in resultado.errors:
        print(f"  - FID {e['fid_number'] or '?'}: {e['error']}")


def cmd_resumen(args: argparse.Namespace) -> None:
    filas = resumen_estados()
    if not filas:
        print("No hay atenciones registradas.")
        return
    for r in filas:
        print(f"{r['fid_number']} | {r['lastname']} {r['name']} | {r['appointment_date']} | {_ETIQUETAS[r['status']]}")


def cmd_recalcular(args: argparse.Namespace) -> None:
    completados = recalcular_todos()
    print(f"Pacientes completados: {completados}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gestor_atenciones", description="CLI del gestor de atenciones e informes")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea la DB y carga el seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entidades")
    p_list.add_argument("entity", choices=["doctores", "pacientes", "items"])
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Crea paciente")
    p_addp.add_argument("--fid-number", required=True, help="Cédula")
    p_addp.add_argument("--nombre", required=True)
    p_addp.add_argument("--apellido", required=True)
    p_addp.add_argument("--email", default=None)
    p_addp.add_argument("--telefono", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    p_imp = sub.add_parser("import-excel", help="Carga la planilla diaria (.xlsx)")
    p_imp.add_argument("archivo")
    p_imp.set_defaults(func=cmd_import_excel)

    p_res = sub.add_parser("resumen", help="Estado de envío por paciente")
    p_res.set_defaults(func=cmd_resumen)

    p_rec = sub.add_parser("recalcular", help="Recalcula 'completed' para todos los pacientes")
    p_rec.set_defaults(func=cmd_recalcular)

    return p


def main() -> None:
    config = cargar_configuracion()
    setup_logging(config.log_level, config.log_file)

    parser = build_parser()
    args = parser.parse_args()
    init_db()  # garantiza las tablas
    try:
        args.func(args)
    except ErrorDominio as e:
        print(f"Error: {e.mensaje}")
        raise SystemExit(1) from None


if __name__ == "__main__":
    main()
