"""Seed database with demo data."""
from lessonhub.auth import create_access_token
from lessonhub.database import SessionLocal
from lessonhub.models import ContractVariant, Student, User
from lessonhub.schemas import ContractSaveRequest
from lessonhub.use_cases.contract_lifecycle import save_contract
import uuid


def seed():
    """Seed database with demo data."""
    db = SessionLocal()

    try:
        # Create users
        users_data = [
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000101'),
                'name': 'Verwaltung',
                'email': 'admin@lessonhub.local',
                'role': 'admin',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000102'),
                'name': 'Anna Berger',
                'email': 'anna@lessonhub.local',
                'role': 'teacher',
                'instrument': 'Klavier',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000103'),
                'name': 'Jonas Keller',
                'email': 'jonas@lessonhub.local',
                'role': 'teacher',
                'instrument': 'Gitarre',
            },
        ]
        users = [User(**user_data) for user_data in users_data]
        db.add_all(users)

        students = [
            Student(name='Lena Schmidt', instrument='Klavier', email='lena@example.com'),
            Student(name='Paul Wagner', instrument='Gitarre', phone='+49 170 0000000'),
        ]
        db.add_all(students)

        variants = [
            ContractVariant(name='10er Karte', contract_type='ten_class_card', total_lessons=10),
            ContractVariant(name='Halbjahresvertrag', contract_type='half_year', total_lessons=18),
            ContractVariant(name='Monatsvertrag', contract_type='monthly', total_lessons=4),
        ]
        db.add_all(variants)
        db.commit()

        # One contract per student so the lesson ledger has rows to edit.
        admin = users[0]
        for student, teacher, variant in ((students[0], users[1], variants[0]), (students[1], users[2], variants[1])):
            save_contract(
                db,
                data=ContractSaveRequest(
                    student_id=student.id,
                    contract_variant_id=variant.id,
                    teacher_id=teacher.id,
                ),
                is_update=False,
                current_user=admin,
            )

        print("✅ Database seeded successfully!")
        print("\nDemo access tokens:")
        for user in users:
            print(f"  {user.name} ({user.role}): {create_access_token({'sub': str(user.id)})}")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding database: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
