from __future__ import annotations

import argparse
from datetime import datetime

from . import business_rules as br
from .db import init_db
from .errors import DomainError
from .logging_config import setup_logging
from .models import AppointmentType, PatientClassification
from .pricing import format_currency
from .scheduling import book_appointment, cancel_appointment, quote_cancellation, reschedule_appointment
from .seed import seed_base
from .services import (
    create_patient,
    list_doctors,
    list_patients,
    list_specialties,
    mark_notification_sent,
    pending_notifications,
)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("Banco inicializado e seed concluído.")


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("clinica.api_main:app", host=args.host, port=args.port, reload=args.reload, log_level="info")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in list_doctors():
            print(f"{d['id']} | {d['name']} | {d['crm']} | {d['specialty'] or '-'}")
    elif args.entity == "patients":
        rows, _ = list_patients(limit=100)
        for p in rows:
            print(f"{p['id']} | {p['user']['full_name']} | {p['user']['cpf'] or '-'} | {p['classification']}")
    elif args.entity == "specialties":
        rows, _ = list_specialties(limit=100)
        for sp in rows:
            price = format_currency(sp["price"]) if sp["price"] is not None else "-"
            print(f"{sp['id']} | {sp['name']} ({sp['duration']} min) | {price}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    p = create_patient(
        email=args.email,
        password=args.password,
        first_name=args.first_name,
        last_name=args.last_name,
        cpf=args.cpf,
        phone=args.phone,
    )
    print(f"Paciente criado: {p['id']}")


def cmd_book(args: argparse.Namespace) -> None:
    start = datetime.fromisoformat(args.start)  # formato: 2026-01-14T10:30
    outcome = book_appointment(
        patient_id=args.patient_id,
        doctor_id=args.doctor_id,
        scheduled_at=start,
        appointment_type=args.type,
        duration=args.duration,
        urgency_level=args.urgency,
        reason=args.reason,
        join_waitlist_if_full=args.waitlist,
    )
    print(outcome.message)
    if outcome.appointment_id:
        print(f"Consulta ID: {outcome.appointment_id}")
    for w in outcome.warnings:
        print(f"  aviso [{w['impact']}]: {w['message']}")


def cmd_cancel(args: argparse.Namespace) -> None:
    result = cancel_appointment(args.appointment_id, reason=args.reason)
    print(f"Cancelada. Taxa: {format_currency(result['cancellation_fee'])}")
    if result["refund_amount"]:
        print(f"Estorno: {format_currency(result['refund_amount'])}")
    if result["promoted_appointment_id"]:
        print(f"Horário repassado da lista de espera: {result['promoted_appointment_id']}")


def cmd_reschedule(args: argparse.Namespace) -> None:
    result = reschedule_appointment(args.appointment_id, datetime.fromisoformat(args.start), reason=args.reason)
    print(f"Reagendada para {result['appointment']['scheduled_at']}. Taxa: {format_currency(result['rescheduling_fee'])}")


def cmd_quote_cancellation(args: argparse.Namespace) -> None:
    quote = quote_cancellation(args.appointment_id)
    print(f"Antecedência: {quote['hours_before']}h | taxa: {format_currency(quote['cancellation_fee'])}")
    for v in quote["result"]["violations"]:
        if v["severity"] == "ERROR":
            print(f"  bloqueio: {v['message']}")


def cmd_priority(args: argparse.Namespace) -> None:
    score = br.calculate_priority_score(args.type, args.classification, args.urgency, args.waiting_hours)
    print(f"Prioridade: {score}")


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Simula o sistema de envio externo:
    - lê notificações devidas
    - imprime no console
    - marca como enviadas
    """
    pending = pending_notifications(limit=args.limit)
    if not pending:
        print("Nenhuma notificação pendente.")
        return

    for n in pending:
        print(f"[{n['id']}] {n['type']} | {n['created_at']} | {n['message']}")
        if args.mark_sent:
            mark_notification_sent(n["id"])

    if args.mark_sent:
        print("Notificações marcadas como enviadas.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinica", description="CLI da clínica (operação e simulação de sistemas externos)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Cria o banco e carrega o seed")
    p_init.set_defaults(func=cmd_init)

    p_serve = sub.add_parser("serve", help="Sobe a API HTTP (uvicorn)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    p_list = sub.add_parser("list", help="Lista entidades")
    p_list.add_argument("entity", choices=["doctors", "patients", "specialties"])
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Cadastra paciente")
    p_addp.add_argument("--email", required=True)
    p_addp.add_argument("--password", required=True)
    p_addp.add_argument("--first-name", required=True)
    p_addp.add_argument("--last-name", required=True)
    p_addp.add_argument("--cpf", required=True)
    p_addp.add_argument("--phone", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    types = [t.value for t in AppointmentType]

    p_book = sub.add_parser("book", help="Agenda consulta")
    p_book.add_argument("--patient-id", required=True)
    p_book.add_argument("--doctor-id", required=True)
    p_book.add_argument("--start", required=True, help="datetime ISO, ex: 2026-01-14T10:30")
    p_book.add_argument("--type", choices=types, default=AppointmentType.CONSULTATION.value)
    p_book.add_argument("--duration", type=int, default=None)
    p_book.add_argument("--urgency", type=int, default=5)
    p_book.add_argument("--reason", default=None)
    p_book.add_argument("--waitlist", action="store_true", help="Se o horário estiver ocupado, entra na lista de espera")
    p_book.set_defaults(func=cmd_book)

    p_cancel = sub.add_parser("cancel", help="Cancela consulta")
    p_cancel.add_argument("--appointment-id", required=True)
    p_cancel.add_argument("--reason", default=None)
    p_cancel.set_defaults(func=cmd_cancel)

    p_res = sub.add_parser("reschedule", help="Reagenda consulta")
    p_res.add_argument("--appointment-id", required=True)
    p_res.add_argument("--start", required=True)
    p_res.add_argument("--reason", default=None)
    p_res.set_defaults(func=cmd_reschedule)

    p_quote = sub.add_parser("quote-cancellation", help="Simula a taxa de cancelamento")
    p_quote.add_argument("--appointment-id", required=True)
    p_quote.set_defaults(func=cmd_quote_cancellation)

    p_prio = sub.add_parser("priority", help="Calcula a prioridade na lista de espera")
    p_prio.add_argument("--type", choices=types, default=AppointmentType.CONSULTATION.value)
    p_prio.add_argument("--classification", choices=[c.value for c in PatientClassification], default="REGULAR")
    p_prio.add_argument("--urgency", type=int, default=5)
    p_prio.add_argument("--waiting-hours", type=float, default=0.0)
    p_prio.set_defaults(func=cmd_priority)

    p_not = sub.add_parser("notifications", help="Lê e envia notificações pendentes (simulação)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Marca como enviadas após imprimir")
    p_not.set_defaults(func=cmd_notifications)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()
    init_db()  # garante tabelas
    try:
        args.func(args)
    except DomainError as e:
        print(f"Erro [{e.code}]: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
