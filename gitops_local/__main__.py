"""Run the gitops-local command line tool."""

from gitops_local.tool.gitops_local import main

main()
