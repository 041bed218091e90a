from typing import Any, List

import bcrypt

from core.errors import AmbiguousMatch, NotFound
from core.logger import log_event
from core.operations import xen_operation
from schemas.user_schema import UserCreated, UserDescriptor

SUBJECT_NAME_KEY = "subject-name"
SUBJECT_PASSWORD_HASH_KEY = "subject-password-hash"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


class UserController:
    """
    Subject (user) administration through XenAPI role-based access control.

    Passwords are stored as bcrypt hashes in the subject's other_config,
    never in plaintext.
    """

    def __init__(self, sessions) -> None:
        self.sessions = sessions

    def _operation(self, operation: str, description: str):
        return xen_operation(self.sessions, operation, description, tag="user")

    @staticmethod
    def _find_subjects(api: Any, username: str) -> List[str]:
        records = api.subject.get_all_records()
        return [
            ref
            for ref, record in records.items()
            if (record.get("other_config") or {}).get(SUBJECT_NAME_KEY) == username
        ]

    @staticmethod
    def _resolve_role(api: Any, role: str) -> str:
        refs = api.role.get_by_name_label(role)
        if not refs:
            raise NotFound(f"Role '{role}' not found", "create_user")
        if len(refs) > 1:
            raise AmbiguousMatch(f"Role name '{role}' matches {len(refs)} roles", "create_user")
        return refs[0]

    def create_user(self, username: str, password: str, role: str) -> UserCreated:
        with self._operation("create_user", f"creating user {username}") as api:
            if self._find_subjects(api, username):
                raise AmbiguousMatch(f"User '{username}' already exists", "create_user")
            role_ref = self._resolve_role(api, role)
            subject_ref = api.subject.create(
                {
                    "subject_identifier": username,
                    "other_config": {
                        SUBJECT_NAME_KEY: username,
                        SUBJECT_PASSWORD_HASH_KEY: hash_password(password),
                    },
                }
            )
            api.subject.add_to_roles(subject_ref, role_ref)
            log_event(f"[user] User {username} created with role {role}")
        return UserCreated(ref=subject_ref, username=username, role=role)

    def delete_user(self, username: str) -> None:
        with self._operation("delete_user", f"deleting user {username}") as api:
            refs = self._find_subjects(api, username)
            if not refs:
                raise NotFound(f"User '{username}' not found", "delete_user")
            if len(refs) > 1:
                raise AmbiguousMatch(
                    f"Username '{username}' matches {len(refs)} subjects", "delete_user"
                )
            api.subject.destroy(refs[0])
            log_event(f"[user] User {username} deleted")

    def list_users(self) -> List[UserDescriptor]:
        with self._operation("list_users", "listing users") as api:
            users = []
            for record in api.subject.get_all_records().values():
                other_config = record.get("other_config") or {}
                users.append(
                    UserDescriptor(
                        uuid=record["uuid"],
                        username=other_config.get(SUBJECT_NAME_KEY, record.get("subject_identifier", "")),
                        roles=[api.role.get_name_label(ref) for ref in record.get("roles", [])],
                    )
                )
            return users
