__red_end_user_data_statement__ = (
    "This cog stores the Discord channel, thread and message IDs needed to link a thread to "
    "the GitHub issue created from it. Message text is sent to GitHub and is not kept by the bot."
)


async def setup(bot):
    from .issue_relay import IssueRelay

    await bot.add_cog(IssueRelay(bot))
