import getpass
import os
import sys

from dotenv import load_dotenv

from edu_billing.core.config import Settings
from edu_billing.domain.models.user import Role
from edu_billing.infrastructure.repositories.user_repository import UserRepository
from edu_billing.services.user_service import UserService


def main() -> None:
    load_dotenv()
    settings = Settings()

    email = os.getenv("SEED_USER_EMAIL") or input("Email: ").strip()
    role_name = (os.getenv("SEED_USER_ROLE") or input("Role [STUDENT]: ").strip() or "STUDENT").upper()
    try:
        role = Role(role_name)
    except ValueError as exc:
        raise RuntimeError(f"Unknown role {role_name}; use one of {', '.join(r.value for r in Role)}.") from exc

    password = os.getenv("SEED_USER_PASSWORD") or getpass.getpass("Password: ")

    settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    users = UserRepository(str(settings.database_path))
    service = UserService(users, jwt_secret=settings.jwt_secret)

    try:
        user = service.register(email, password, role=role)
    except ValueError as exc:
        print(f"Could not create user: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Created user {user.id} <{user.email}> with role {user.role.value}")


if __name__ == "__main__":
    main()
