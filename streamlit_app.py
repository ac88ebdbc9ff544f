from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Gestor de Atenciones", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")

ETIQUETAS_ESTADO = {"sent": "Enviado", "pending": "Pendiente por enviar", "not_sent": "No enviado"}


# JWT helpers (solo para la UI, sin verificar firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    exp = jwt_payload(token).get("exp")
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)


def jwt_username(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("username") or p.get("sub") or "usuario")


# HTTP client (con JWT)

def _headers(token: str | None, json_body: bool = False) -> dict:
    headers = {"Content-Type": "application/json"} if json_body else {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _respuesta(r: requests.Response) -> dict | list:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (token inválido/expirado o backend reiniciado).")
    if r.status_code >= 400:
        try:
            detalle = r.json().get("detail")
        except ValueError:
            detalle = r.text
        raise RuntimeError(f"{r.status_code}: {detalle}")
    return r.json()


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    r = requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10)
    return _respuesta(r)


def api_post(path: str, payload: dict | list, token: str | None = None) -> dict:
    r = requests.post(f"{API_BASE}{path}", headers=_headers(token, json_body=True), json=payload, timeout=30)
    return _respuesta(r)


def api_upload(path: str, nombre: str, contenido: bytes, token: str) -> dict:
    r = requests.post(
        f"{API_BASE}{path}",
        headers=_headers(token),
        files={"file": (nombre, contenido, "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        timeout=60,
    )
    return _respuesta(r)


def api_login(username: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": username, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str) and len(token) > 0


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.rerun()


def sesion_invalida(e: PermissionError) -> None:
    st.session_state["auth_error"] = str(e)
    st.error("Sesión inválida. Pulsa Logout y vuelve a iniciar sesión.")


# Sidebar login

with st.sidebar:
    st.header("Acceso")

    if not is_logged_in():
        u = st.text_input("Usuario", key="login_user")
        p = st.text_input("Contraseña", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                st.session_state["token"] = api_login(u.strip().lower(), p)
                st.session_state.pop("auth_error", None)
                st.success("Sesión iniciada.")
                st.rerun()
            except requests.HTTPError:
                st.error("Credenciales inválidas.")
            except requests.RequestException as e:
                st.error(str(e))
    else:
        token = st.session_state["token"]
        st.write(f"Usuario: **{jwt_username(token)}**")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")


st.title("Gestor de Atenciones e Informes")

token = st.session_state.get("token")
if not is_logged_in():
    st.warning("Sección reservada. Inicia sesión desde la barra lateral.")
    st.stop()
if jwt_is_expired(token):
    st.error("Sesión expirada. Pulsa Logout y vuelve a iniciar sesión.")
    st.stop()

tab1, tab2, tab3, tab4 = st.tabs(["Carga diaria", "Resumen de envíos", "Paciente", "Enviar informe"])


# TAB 1 - Carga diaria (planilla o formulario)

with tab1:
    st.subheader("Cargar planilla diaria (.xlsx)")
    planilla = st.file_uploader("Planilla", type=["xlsx"], key="carga_planilla")
    if planilla is not None and st.button("Importar planilla", key="carga_btn"):
        try:
            res = api_upload("/api/daily-patients/import", planilla.name, planilla.getvalue(), token)
            st.success(f"Atenciones creadas/vinculadas: {res['createdCount']} | errores: {res['errorsCount']}")
            for e in res["errors"]:
                st.write(f"- FID {e.get('fid_number') or '?'}: {e['error']}")
        except PermissionError as e:
            sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(str(e))

    st.divider()
    st.subheader("Registrar atención manual")

    c1, c2, c3 = st.columns(3)
    fid = c1.text_input("Cédula", key="man_fid")
    nombre = c2.text_input("Nombre", key="man_nombre")
    apellido = c3.text_input("Apellido", key="man_apellido")
    email = c1.text_input("Email (opcional)", key="man_email")
    telefono = c2.text_input("Teléfono (opcional)", key="man_tel")
    doctor = c3.text_input("Doctor (nombre de sistema)", key="man_doctor")
    estudio = c1.text_input("Estudio", key="man_estudio")
    fecha = c2.date_input("Fecha", value=date.today(), key="man_fecha")
    hora = c3.time_input("Hora", value=datetime.now().time().replace(second=0, microsecond=0), key="man_hora")

    if st.button("Registrar", key="man_submit"):
        payload = {
            "appointment_date": fecha.isoformat(),
            "appointment_time": hora.strftime("%H:%M"),
            "patient": {
                "fid_number": fid.strip(),
                "name": nombre.strip(),
                "lastname": apellido.strip(),
                "email": email.strip() or None,
                "phone": telefono.strip() or None,
            },
            "doctor": {"cyclhos_name": doctor.strip()},
            "study": {"item": estudio.strip()},
            "source": "manual",
        }
        try:
            res = api_post("/api/daily-patients", payload, token=token)
            n = len(res["appointments"]) if res["kind"] == "expanded" else 1
            st.success(f"Atención registrada ({n} registro/s).")
        except PermissionError as e:
            sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(str(e))


# TAB 2 - Resumen de envíos

with tab2:
    st.subheader("Estado de envío por paciente")
    try:
        resumen = api_get("/api/daily-patients/summary", token=token)
        if not resumen:
            st.info("No hay atenciones registradas.")
        else:
            st.dataframe(
                [
                    {
                        "Cédula": r["fid_number"],
                        "Paciente": f"{r['lastname']} {r['name']}",
                        "Fecha": r["appointment_date"],
                        "Estado": ETIQUETAS_ESTADO.get(r["status"], r["status"]),
                    }
                    for r in resumen
                ],
                use_container_width=True,
            )
            st.session_state["resumen"] = resumen
    except PermissionError as e:
        sesion_invalida(e)
    except (RuntimeError, requests.RequestException) as e:
        st.error(f"Error resumen: {e}")


# TAB 3 - Detalle de paciente

with tab3:
    st.subheader("Detalle de paciente")
    resumen = st.session_state.get("resumen") or []
    elegido = st.selectbox(
        "Paciente",
        options=resumen,
        format_func=lambda r: f"{r['fid_number']} | {r['lastname']} {r['name']}",
        key="det_paciente",
    )
    if elegido:
        try:
            det = api_get(f"/api/daily-patients/summary/{elegido['patient_id']}", token=token)
            st.write(f"**{det['name']} {det['lastname']}** | {det.get('email') or '-'} | {det.get('phone') or '-'}")
            st.write(f"Atenciones: {det['total_attentions']}")
            for it in det["items"]:
                st.write(f"- **{it['mapped_name']}**")
                for a in it["appointments"]:
                    st.write(f"    - {a['appointment_date']} {a['appointment_time']} (id {a['daily_id']})")
            st.caption("Doctores: " + ", ".join(d["full_name"] for d in det["doctors"]))
        except PermissionError as e:
            sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(str(e))


# TAB 4 - Enviar informe por correo

with tab4:
    st.subheader("Enviar informe al paciente")
    c1, c2 = st.columns(2)
    cedula = c1.text_input("Cédula", key="env_cedula")
    nombre_env = c2.text_input("Nombre", key="env_nombre")
    email_env = c1.text_input("Email", key="env_email")
    asunto = c2.text_input("Asunto", value="Resultados de sus estudios", key="env_asunto")
    cuerpo = st.text_area("Mensaje", height=120, key="env_cuerpo")
    rutas = st.text_area("Rutas de informes (una por línea)", key="env_rutas")
    ids = st.text_area("IDs de atención (una por línea)", key="env_ids")

    if st.button("Enviar", key="env_submit"):
        payload = {
            "cedula": cedula.strip(),
            "nombre": nombre_env.strip(),
            "email": email_env.strip(),
            "asunto": asunto.strip(),
            "cuerpo": cuerpo,
            "reportPaths": [r.strip() for r in rutas.splitlines() if r.strip()],
            "attentionIds": [i.strip() for i in ids.splitlines() if i.strip()],
        }
        try:
            res = api_post("/api/technician/send-with-file", payload, token=token)
            st.success(f"Correo enviado (messageId {res.get('message_id')}).")
        except PermissionError as e:
            sesion_invalida(e)
        except (RuntimeError, requests.RequestException) as e:
            st.error(str(e))
