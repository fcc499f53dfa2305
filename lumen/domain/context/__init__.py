# Context for each reasoning call is assembled per turn:
#
# +---------------------+      +---------------------+
# |   RuntimeMemory     |      |   SecretRedactor    |
# |---------------------|      |---------------------|
# | request/response    |      | placeholder report  |
# | pairs per identity  |      | (this run only)     |
# +---------------------+      +---------------------+
#            \                        /
#             \                      /
#              v                    v
#         +------------------------------+
#         |       Reasoning context      |
#         |------------------------------|
#         | last N interactions          |
#         | security context block       |
#         +------------------------------+
#                        |
#                        v
#          [BASE / TOOL_CHOICE / POST_BASE]
