#!/usr/bin/env python3
"""Run a member CSV through the onboarding pipeline from the command line.

Usage:
    python scripts/import_members.py members.csv --operator-id admin-1
    python scripts/import_members.py members.csv --operator-id admin-1 --preview
    DATABASE_URL=... python scripts/import_members.py members.csv --operator-id admin-1

Providers are chosen from settings exactly as the API chooses them.
"""
from __future__ import annotations

import argparse
import json

from sqlalchemy.orm import Session

from onboarding.accounts.provisioner import AccountProvisioner
from onboarding.api.deps import get_credential_manager, get_email_provider, get_security, get_sms_provider
from onboarding.core.errors import BatchAbortedError, FileValidationError
from onboarding.core.logging import setup_logging
from onboarding.core.settings import get_settings
from onboarding.db.base import Base
from onboarding.db.repositories import ImportLedgerRepository, MemberAccountRepository
from onboarding.db.session import get_engine, session_scope
from onboarding.importing.preview import build_preview
from onboarding.importing.processor import BatchProcessor
from onboarding.importing.reader import check_file_format, read_member_file
from onboarding.notification.channels import MessageContext
from onboarding.notification.dispatcher import NotificationDispatcher


def run(session: Session, path: str, operator_id: str, operator_name: str, preview_only: bool) -> dict:
    settings = get_settings()
    security = get_security()
    accounts = MemberAccountRepository(session, security)
    parsed = read_member_file(path)

    if preview_only:
        return build_preview(parsed, accounts, default_region=settings.default_phone_region).to_dict()

    ledgers = ImportLedgerRepository(session, security)
    credentials = get_credential_manager()
    context = MessageContext(
        organization_name=settings.organization_name,
        support_phone=settings.support_phone,
        portal_url=settings.portal_url,
        expiry_hours=settings.credential_ttl_hours,
    )
    with NotificationDispatcher(
        session,
        sms_provider=get_sms_provider(),
        email_provider=get_email_provider(),
        context=context,
        ledgers=ledgers,
        sms_max_concurrency=settings.sms_max_concurrency,
        email_max_concurrency=settings.email_max_concurrency,
        timeout_seconds=settings.send_timeout_seconds,
    ) as dispatcher:
        processor = BatchProcessor(
            session,
            accounts=accounts,
            ledgers=ledgers,
            credentials=credentials,
            provisioner=AccountProvisioner(session, accounts, credentials),
            dispatcher=dispatcher,
            max_workers=settings.import_max_workers,
            default_region=settings.default_phone_region,
        )
        result = processor.process(
            parsed.rows,
            operator_id=operator_id,
            operator_name=operator_name,
            source_filename=path,
        )
    return result.to_dict()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("path", help="member CSV file")
    parser.add_argument("--operator-id", required=True)
    parser.add_argument("--operator-name", default=None)
    parser.add_argument("--preview", action="store_true", help="validate only; write nothing")
    args = parser.parse_args()

    setup_logging()
    engine = get_engine()
    Base.metadata.create_all(engine)

    try:
        check_file_format(args.path)
        with session_scope() as session:
            output = run(session, args.path, args.operator_id, args.operator_name or args.operator_id, args.preview)
    except FileValidationError as exc:
        print(json.dumps({"code": str(exc.code), "message": str(exc)}, indent=2))
        return 2
    except BatchAbortedError as exc:
        print(json.dumps({"code": str(exc.code), "message": str(exc), "ledgerId": str(exc.ledger_id)}, indent=2))
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
