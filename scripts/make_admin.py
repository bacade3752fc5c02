import asyncio
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.base import async_session_factory, init_db
from database.models.user import User, UserRole
from sqlalchemy import select


async def make_admin(email: str):
    """Grant the admin role to a user"""
    await init_db()

    async with async_session_factory() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user:
            print(f"❌ No user with email {email}")
            return

        old_role = user.role.value
        user.role = UserRole.ADMIN
        await session.commit()

        print(f"✅ {user.full_name} ({email}) is now an admin")
        print(f"🔄 Role: {old_role} → {user.role.value}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/make_admin.py <email>")
        sys.exit(1)
    asyncio.run(make_admin(sys.argv[1]))
