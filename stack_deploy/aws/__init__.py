"""
AWS side of a deployment.

- infrastructure: CloudFormation stacks, ECR images and ECS services
- orchestration: precondition checks and the phase workflow
- monitoring: read-only status and output queries
- state: phase progress tracking
"""
