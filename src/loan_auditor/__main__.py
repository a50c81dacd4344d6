from loan_auditor.cli import app

app()
