from discord_stats.cli import main

main()
