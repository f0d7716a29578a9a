from driving_school.routes import auth, dashboard, payments, students

__all__ = ["auth", "dashboard", "payments", "students"]
