# ABOUTME: Installation package: desired-state rendering, application and live reconciliation
# ABOUTME: Holds the evaluator boundary, the installer and its reconcilers
