"""
report-processor — Source package.

Modules:
    models              — templates, schedules, history records, next-run arithmetic
    document            — format-independent Document / Section / ChartSpec model
    assembler           — metric registry and Document assembly from templates
    simulated_provider  — deterministic NumPy/pandas metric source for demo runs
    highlights          — key-highlight sentences for report headers
    charts              — matplotlib chart rasteriser + image signature validation
    output_paths        — output naming, path containment, cleanup sweep
    pdf_builder         — ReportLab PDF backend
    excel_pack          — openpyxl workbook backend
    renderer            — renders one Document to every configured format
    distributor         — email (SMTP), Slack and webhook delivery
    store               — record stores (memory, YAML) and repositories
    history             — append-only generation history
    processor           — APScheduler-driven due-report poller
    service             — service object exposing the operational surface
    config              — YAML configuration with defaults and env overrides
"""
