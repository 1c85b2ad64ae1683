# ABOUTME: GitOps package: repository polling and change-set computation
# ABOUTME: Holds the sync controller and the snapshot-backed change-set engine
