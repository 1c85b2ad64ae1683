# ABOUTME: Mesh control-plane package: command construction and execution
# ABOUTME: Commands are routed to a control queue or a catalog queue
