# render.py
import html
import json

from security import mask_sensitive

# Visible inputs first, then the autocomplete-only ones kept off-screen.
VISIBLE_FIELDS: list[tuple[str, str, str, str]] = [
    ("username", "Full Name", "text", "name"),
    ("email", "Email Address", "email", "email"),
]

HIDDEN_AUTOFILL_FIELDS: list[tuple[str, str]] = [
    ("phone", "tel"),
    ("address", "street-address"),
    ("organization", "organization"),
    ("cc-number", "cc-number"),
    ("city", "address-level2"),
    ("state", "address-level1"),
    ("pincode", "postal-code"),
]


def esc(s: str | None) -> str:
    """
    HTML escape for any user/store-derived text inserted into HTML strings.
    Always escape (including quotes).
    """
    return html.escape(s or "", quote=True)


def render_form(csrf_token: str) -> str:
    visible = []
    for name, label, input_type, autocomplete in VISIBLE_FIELDS:
        visible.append(
            f"""
            <div>
                <label for="{name}">{esc(label)}</label>
                <input type="{input_type}" id="{name}" name="{name}" autocomplete="{autocomplete}" required>
            </div>
            """
        )

    hidden = []
    for name, autocomplete in HIDDEN_AUTOFILL_FIELDS:
        hidden.append(
            f'<input type="text" id="{name}" name="{name}" autocomplete="{autocomplete}" tabindex="-1">'
        )

    return f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
    <meta charset="UTF-8">
    <title>Registration</title>
    <style>
        .hidden-fields {{ position: absolute; left: -9999px; opacity: 0; width: 1px; height: 1px; overflow: hidden; }}
    </style>
    </head>
    <body>
    <h1>Registration</h1>
    <p>Fill in your details to register.</p>
    <form action="/submit" method="POST">
        <input type="hidden" name="csrf_token" value="{esc(csrf_token)}">
        <input type="hidden" id="research_metadata" name="research_metadata" value="">
        {"".join(visible)}
        <div class="hidden-fields" aria-hidden="true">
            {"".join(hidden)}
        </div>
        <button type="submit">Submit</button>
    </form>
    <p><a href="/view-data">View Captured Data</a></p>
    </body>
    </html>
    """


def render_success(submission_id: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>Success</title></head>
    <body>
    <h2>Registration Successful!</h2>
    <p>Your data has been recorded successfully.</p>
    <p><strong>Reference:</strong> {esc(submission_id)}</p>
    <p><a href="/">Back to Form</a></p>
    </body>
    </html>
    """


def render_submissions(records: list[dict], summary: dict, refresh_seconds: int | None = None) -> str:
    """
    records: SubmissionRecord.to_json() dicts, store order.
    summary: total / autofill / suspicious / blocked counts.
    """
    refresh = f'<meta http-equiv="refresh" content="{int(refresh_seconds)}">' if refresh_seconds else ""

    cards = []
    for i, r in enumerate(records, start=1):
        flags = r.get("flags") or {}
        badges = []
        if flags.get("isSuspicious"):
            badges.append('<span class="flag-suspicious">SUSPICIOUS</span>')
        if flags.get("autofillUsed"):
            badges.append('<span class="flag-autofill">AUTOFILL</span>')

        field_rows = []
        for name, value in (r.get("formFields") or {}).items():
            field_rows.append(
                f"<tr><td>{esc(name)}</td><td>{esc(mask_sensitive(name, value)) or 'N/A'}</td></tr>"
            )
        if not field_rows:
            field_rows.append("<tr><td colspan='2'>No fields</td></tr>")

        metadata = r.get("researchMetadata") or {}
        metadata_html = (
            f"<pre>{esc(json.dumps(metadata, indent=2, ensure_ascii=False))}</pre>" if metadata else ""
        )

        cards.append(
            f"""
            <div class="submission">
                <h3>Submission #{i} <small>{esc(r.get("id"))}</small> {" ".join(badges)}</h3>
                <p><strong>Time:</strong> {esc(r.get("timestamp"))}</p>
                <p><strong>IP:</strong> {esc(r.get("clientAddress"))}</p>
                <p><strong>User Agent:</strong> {esc(r.get("userAgent")) or 'N/A'}</p>
                <table border="1">
                    <thead><tr><th>Field</th><th>Value</th></tr></thead>
                    <tbody>{"".join(field_rows)}</tbody>
                </table>
                {metadata_html}
            </div>
            """
        )

    if not cards:
        cards.append("<p>No data captured yet.</p>")

    return f"""
    <!DOCTYPE html>
    <html>
    <head><title>Captured Data</title>{refresh}</head>
    <body>
    <h1>Captured Form Data</h1>
    <p><strong>Total:</strong> {summary["total"]} submissions</p>
    <p><strong>Autofill Used:</strong> {summary["autofill"]}</p>
    <p><strong>Suspicious:</strong> {summary["suspicious"]}</p>
    <p><strong>Blocked Clients:</strong> {summary["blocked"]}</p>
    <p><a href="/">Back to Form</a></p>
    {"".join(cards)}
    </body>
    </html>
    """
