"""
CarePulse backend.

Layout:
- config.py        : environment settings (dotenv) and logging setup
- db.py            : SQLAlchemy engine and sessions
- models.py        : ORM models and enums
- errors.py        : domain exceptions
- validation.py    : pydantic input schemas
- security.py      : password hashing, JWT, admin passkey
- auth_service.py  : sign up, login, password reset
- services.py      : patients, doctors, appointments, prescriptions, dashboard
- ai_service.py    : AI consultation (chat, vision, realtime voice session)
- storage.py       : uploaded files on local disk
- notifications.py : email (SMTP) and SMS messages
- api_main.py      : FastAPI application
- seed.py          : initial data (admin, doctors)
- cli.py           : command line administration
"""
