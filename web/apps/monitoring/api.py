from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import circuit_states


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    # An open circuit degrades the service but does not make it unhealthy.
    circuits = {name: {"state": state} for name, state in circuit_states().items()}
    code = 200 if db_ok else 503
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, "circuits": circuits}},
        status=code,
    )
