from __future__ import annotations

import argparse

from .config import check_environment, configure_logging
from .seed import seed_base
from .services import (
    accept_appointment,
    cancel_appointment,
    get_recent_appointment_list,
    init_db,
    list_doctors,
    list_patients,
    verify_doctor,
)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("Database initialised and seed completed.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in list_doctors()["documents"]:
            flag = "verified" if d["is_verified"] else "unverified"
            print(f"{d['id']} | {d['name']} | {d['specialization']} | {flag}")
    elif args.entity == "patients":
        for p in list_patients()["documents"]:
            print(f"{p['id']} | {p['name']} | {p['email']}")
    elif args.entity == "appointments":
        res = get_recent_appointment_list()
        for a in res["documents"]:
            print(f"{a['id']} | {a['schedule']} | {a['patient_name']} -> Dr. {a['doctor_name']} | {a['status']}")
        print(
            f"scheduled: {res['scheduled_count']}  pending: {res['pending_count']}  "
            f"cancelled: {res['cancelled_count']}"
        )


def cmd_verify_doctor(args: argparse.Namespace) -> None:
    print("Verified." if verify_doctor(args.doctor_id) else "Doctor not found.")


def cmd_accept(args: argparse.Namespace) -> None:
    a = accept_appointment(args.appointment_id)
    print(f"Scheduled: {a['id']} {a['meeting'] or ''}".rstrip())


def cmd_cancel(args: argparse.Namespace) -> None:
    a = cancel_appointment(args.appointment_id, reason=args.reason)
    print(f"Cancelled: {a['id']}")


def cmd_check_env(args: argparse.Namespace) -> None:
    res = check_environment()
    for name in res["present"]:
        print(f"[ok]      {name}")
    for name in res["missing"]:
        print(f"[missing] {name}")
    print("All required variables are set." if res["all_present"] else "Some variables are missing.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="carepulse", description="CarePulse admin CLI")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create the database and load the seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["doctors", "patients", "appointments"])
    p_list.set_defaults(func=cmd_list)

    p_verify = sub.add_parser("verify-doctor", help="Mark a doctor as verified")
    p_verify.add_argument("--doctor-id", required=True)
    p_verify.set_defaults(func=cmd_verify_doctor)

    p_accept = sub.add_parser("accept", help="Accept (schedule) an appointment")
    p_accept.add_argument("--appointment-id", required=True)
    p_accept.set_defaults(func=cmd_accept)

    p_cancel = sub.add_parser("cancel", help="Cancel an appointment")
    p_cancel.add_argument("--appointment-id", required=True)
    p_cancel.add_argument("--reason", default=None)
    p_cancel.set_defaults(func=cmd_cancel)

    p_env = sub.add_parser("check-env", help="Report which required environment variables are set")
    p_env.set_defaults(func=cmd_check_env)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging()
    init_db()  # make sure the tables exist
    args.func(args)


if __name__ == "__main__":
    main()
